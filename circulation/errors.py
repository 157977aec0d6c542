"""Error kinds raised by the circulation core.

Every failure a caller can observe is a ``CirculationError`` carrying a
``kind`` discriminator and a human readable ``message``. Raw ``sqlite3``
exceptions are translated before they leave the package.
"""

from __future__ import annotations

from typing import Dict


class CirculationError(Exception):
    """Base class for recoverable circulation failures."""

    kind = "CirculationError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}

    def __str__(self) -> str:
        return self.message


class NotFound(CirculationError, LookupError):
    kind = "NotFound"


class NotAvailable(CirculationError):
    kind = "NotAvailable"


class AlreadyReturned(CirculationError):
    kind = "AlreadyReturned"


class AlreadyResolved(CirculationError):
    kind = "AlreadyResolved"


class LimitExceeded(CirculationError):
    kind = "LimitExceeded"


class InvalidSetting(CirculationError, ValueError):
    kind = "InvalidSetting"


class InvalidRecord(CirculationError, ValueError):
    kind = "InvalidRecord"


class DuplicateRecord(CirculationError):
    kind = "DuplicateRecord"


class StoreConflict(CirculationError):
    """The transaction could not be serialized within the retry budget."""

    kind = "StoreConflict"


class StoreUnavailable(CirculationError):
    """The store cannot be opened or used; infrastructure, not a rule violation."""

    kind = "StoreUnavailable"
