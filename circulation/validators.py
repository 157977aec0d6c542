import math
import re
from typing import Any, Optional

from .errors import InvalidRecord, InvalidSetting
from .models import Role

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")


class SettingValidator:
    """Parsers for the string values kept in the settings table."""

    @staticmethod
    def parse_positive_int(key: str, raw: Any) -> int:
        text = str(raw).strip() if raw is not None else ""
        try:
            value = int(text)
        except ValueError:
            raise InvalidSetting(f"{key} must be a positive integer, got {raw!r}") from None
        if value <= 0:
            raise InvalidSetting(f"{key} must be a positive integer, got {raw!r}")
        return value

    @staticmethod
    def parse_non_negative_number(key: str, raw: Any) -> float:
        text = str(raw).strip() if raw is not None else ""
        try:
            value = float(text)
        except ValueError:
            raise InvalidSetting(f"{key} must be a non-negative number, got {raw!r}") from None
        # float() accepts "nan" and "inf"
        if not math.isfinite(value) or value < 0:
            raise InvalidSetting(f"{key} must be a non-negative number, got {raw!r}")
        return value


class TextValidator:
    """Basic checks for the free-text fields of books and users."""

    @staticmethod
    def require_text(field: str, text: Optional[str]) -> str:
        if text is None or not text.strip():
            raise InvalidRecord(f"{field} cannot be empty.")
        return text.strip()

    @staticmethod
    def optional_text(text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        cleaned = text.strip()
        return cleaned or None

    @staticmethod
    def validate_email(email: Optional[str]) -> str:
        cleaned = TextValidator.require_text("Email", email).lower()
        if not _EMAIL_RE.match(cleaned):
            raise InvalidRecord(f"Invalid email address: {email}")
        return cleaned

    @staticmethod
    def validate_year(year: Any) -> Optional[int]:
        if year is None or year == "":
            return None
        try:
            return int(year)
        except (TypeError, ValueError):
            raise InvalidRecord(f"Publication year must be an integer, got {year!r}") from None

    @staticmethod
    def validate_role(role: Any) -> Role:
        if isinstance(role, Role):
            return role
        for candidate in Role:
            if str(role).strip().lower() == candidate.value.lower():
                return candidate
        allowed = ", ".join(r.value for r in Role)
        raise InvalidRecord(f"Unknown role {role!r}. Allowed: {allowed}")
