import logging
import shutil
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from .config import settings
from .errors import InvalidRecord, StoreUnavailable

if TYPE_CHECKING:
    from .database import Database

logger = logging.getLogger(__name__)


def default_backup_path(db_file: Union[str, Path]) -> Path:
    """``library.db`` -> ``library_backup.db`` next to the store, unless configured."""
    if settings.backup_file:
        return Path(settings.backup_file)
    source = Path(db_file)
    return source.with_name(f"{source.stem}_backup{source.suffix or '.db'}")


def backup_database(db: "Database", destination: Optional[Union[str, Path]] = None) -> Path:
    """Copy the whole store to ``destination``, replacing any earlier copy.

    The write-ahead log is folded into the main file first so the copy is
    self-contained.
    """
    source = Path(db.path)
    target = Path(destination) if destination else default_backup_path(source)
    if not source.exists():
        raise StoreUnavailable(f"Store file {source} does not exist.")
    if target.resolve() == source.resolve():
        raise InvalidRecord("Backup destination must differ from the store file.")

    conn = db.get_connection()
    try:
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    except sqlite3.OperationalError as exc:
        logger.warning(f"WAL checkpoint before backup failed: {exc}")
    finally:
        conn.close()

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
    except OSError as exc:
        raise StoreUnavailable(f"Backup failed: {exc}") from exc
    logger.info(f"Backup created: {target}")
    return target
