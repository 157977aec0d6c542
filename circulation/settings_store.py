"""Key/value settings that parameterize circulation rules.

The store itself does no format validation: values are kept as strings.
Parsing happens where a value is used (``CirculationPolicy.from_values``)
or before a batch update is applied (``validate_updates``).
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import InvalidSetting
from .validators import SettingValidator

logger = logging.getLogger(__name__)

BORROW_DAYS = "borrow_days"
MAX_BORROW = "max_borrow"
FINE_PER_DAY = "fine_per_day"

DEFAULT_BORROW_DAYS = 14
DEFAULT_MAX_BORROW = 5
DEFAULT_FINE_PER_DAY = 1.0

DEFAULT_VALUES: Dict[str, str] = {
    BORROW_DAYS: str(DEFAULT_BORROW_DAYS),
    MAX_BORROW: str(DEFAULT_MAX_BORROW),
    FINE_PER_DAY: "1",
}

_PARSERS: Dict[str, Callable[[str, Any], Any]] = {
    BORROW_DAYS: SettingValidator.parse_positive_int,
    MAX_BORROW: SettingValidator.parse_positive_int,
    FINE_PER_DAY: SettingValidator.parse_non_negative_number,
}


@dataclass(frozen=True)
class CirculationPolicy:
    """Immutable snapshot of the circulation settings for one operation."""

    borrow_days: int = DEFAULT_BORROW_DAYS
    max_borrow: int = DEFAULT_MAX_BORROW
    fine_per_day: float = DEFAULT_FINE_PER_DAY

    @classmethod
    def from_values(cls, values: Mapping[str, str]) -> "CirculationPolicy":
        """Build a policy from stored strings; unset or unparseable keys fall back to defaults."""
        defaults = cls()
        resolved: Dict[str, Any] = {}
        for key, attr in ((BORROW_DAYS, "borrow_days"), (MAX_BORROW, "max_borrow"), (FINE_PER_DAY, "fine_per_day")):
            raw = values.get(key)
            if raw is None:
                resolved[attr] = getattr(defaults, attr)
                continue
            try:
                resolved[attr] = _PARSERS[key](key, raw)
            except ValueError:
                logger.warning(f"Stored setting {key}={raw!r} is not usable, falling back to {getattr(defaults, attr)}")
                resolved[attr] = getattr(defaults, attr)
        return cls(**resolved)

    def to_dict(self) -> dict:
        return {BORROW_DAYS: self.borrow_days, MAX_BORROW: self.max_borrow, FINE_PER_DAY: self.fine_per_day}


def validate_updates(updates: Mapping[str, Any]) -> Dict[str, str]:
    """Check every recognized key of a batch and return the values to store.

    Raises ``InvalidSetting`` on the first bad value; nothing is returned in
    that case so the caller never applies part of a batch. Unknown keys are
    kept verbatim.
    """
    cleaned: Dict[str, str] = {}
    for key, raw in updates.items():
        key = str(key).strip()
        if not key:
            raise InvalidSetting("Setting keys cannot be blank.")
        parser = _PARSERS.get(key)
        if parser is not None:
            parser(key, raw)
        cleaned[key] = str(raw).strip()
    return cleaned


class SettingsStore:
    """Settings table access over an open connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default if default is not None else DEFAULT_VALUES.get(key)
        return row["value"]

    def set(self, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, str(value)),
        )

    def all(self) -> Dict[str, str]:
        rows = self.conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def snapshot(self) -> CirculationPolicy:
        return CirculationPolicy.from_values(self.all())
