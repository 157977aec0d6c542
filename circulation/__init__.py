"""Library Circulation - core package

Modules:
- Circulation rules (engine.py) and the host facade (library.py)
- Stores: settings_store.py, catalog.py, membership.py, ledger.py, reservations.py
- SQLite layer (database.py) and backup utility (backup.py)
- Host surfaces: HTTP API (api.py) and CLI (cli.py)
"""

from .engine import CirculationEngine, compute_fine, late_days
from .errors import (
    AlreadyResolved,
    AlreadyReturned,
    CirculationError,
    DuplicateRecord,
    InvalidRecord,
    InvalidSetting,
    LimitExceeded,
    NotAvailable,
    NotFound,
    StoreConflict,
    StoreUnavailable,
)
from .library import Library
from .models import Book, BookStatus, Loan, Reservation, ReservationStatus, Role, User
from .settings_store import CirculationPolicy

__all__ = [
    "CirculationEngine",
    "CirculationPolicy",
    "Library",
    "compute_fine",
    "late_days",
    # records
    "Book",
    "BookStatus",
    "Loan",
    "Reservation",
    "ReservationStatus",
    "Role",
    "User",
    # errors
    "CirculationError",
    "NotFound",
    "NotAvailable",
    "AlreadyReturned",
    "AlreadyResolved",
    "LimitExceeded",
    "InvalidSetting",
    "InvalidRecord",
    "DuplicateRecord",
    "StoreConflict",
    "StoreUnavailable",
]
