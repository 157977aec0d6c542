"""SQLite persistence for the circulation store.

Every engine operation runs through ``Database.run`` which wraps the work in
a single ``BEGIN IMMEDIATE`` transaction. The write lock is taken before the
first read, so check-then-act sequences (availability, open loan counts,
return dates) are serialized across threads and processes sharing the file.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from .config import settings
from .errors import DuplicateRecord, StoreConflict, StoreUnavailable
from .membership import hash_password
from .models import Role
from .settings_store import DEFAULT_VALUES

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LEGACY_IMPORTABLE = "t.borrow_date IS NOT NULL AND t.due_date IS NOT NULL"

_USERS_TABLE = """
    CREATE TABLE IF NOT EXISTS {name} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'Student',
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL DEFAULT ''
    )
"""


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class Database:
    """Connection factory and transaction runner for one SQLite file.

    Connections are opened per operation and closed afterwards, so one
    instance can be shared between threads. ``:memory:`` is not supported
    since each connection would see its own empty database.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        *,
        busy_timeout: Optional[float] = None,
        attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        seed_admin: Optional[bool] = None,
    ) -> None:
        self.path = str(path or settings.database_file)
        self.busy_timeout = settings.busy_timeout if busy_timeout is None else busy_timeout
        self.attempts = max(1, settings.transaction_attempts if attempts is None else attempts)
        self.backoff = settings.transaction_backoff if backoff is None else backoff
        self.seed_admin = settings.seed_admin if seed_admin is None else seed_admin

    # ------------------------- Connections ------------------------- #
    def get_connection(self, foreign_keys: bool = True) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are explicit."""
        try:
            conn = sqlite3.connect(
                self.path,
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA foreign_keys = {'ON' if foreign_keys else 'OFF'}")
        except sqlite3.Error as exc:
            logger.error(f"Cannot open store {self.path}: {exc}")
            raise StoreUnavailable(f"Cannot open store {self.path}: {exc}") from exc
        return conn

    @contextmanager
    def transaction(self, immediate: bool = True, foreign_keys: bool = True) -> Iterator[sqlite3.Connection]:
        conn = self.get_connection(foreign_keys)
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def run(self, work: Callable[[sqlite3.Connection], T], *, write: bool = True, foreign_keys: bool = True) -> T:
        """Run ``work(conn)`` in one transaction, retrying lock conflicts.

        Business errors raised by ``work`` roll the transaction back and
        propagate unchanged. Lock conflicts are retried with exponential
        backoff; after the last attempt ``StoreConflict`` is raised.
        """
        for attempt in range(1, self.attempts + 1):
            try:
                with self.transaction(immediate=write, foreign_keys=foreign_keys) as conn:
                    return work(conn)
            except sqlite3.OperationalError as exc:
                if not _is_lock_error(exc):
                    logger.error(f"Store unavailable: {exc}")
                    raise StoreUnavailable(f"Store unavailable: {exc}") from exc
                if attempt == self.attempts:
                    raise StoreConflict(
                        f"Transaction could not be serialized after {self.attempts} attempts."
                    ) from exc
                delay = self.backoff * (2 ** (attempt - 1))
                logger.warning(f"Store busy (attempt {attempt}/{self.attempts}), retrying in {delay:.2f}s")
                time.sleep(delay)
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecord(f"Constraint violated: {exc}") from exc
            except sqlite3.DatabaseError as exc:
                logger.error(f"Store unavailable: {exc}")
                raise StoreUnavailable(f"Store unavailable: {exc}") from exc
        raise StoreConflict("Transaction could not be serialized.")  # pragma: no cover

    def read(self, work: Callable[[sqlite3.Connection], T]) -> T:
        return self.run(work, write=False)

    # ------------------------- Schema ------------------------- #
    def initialize(self) -> None:
        """Create tables if needed, migrate older stores and seed defaults."""
        conn = self.get_connection()
        try:
            # Concurrent readers keep working while a writer holds the lock
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.OperationalError as exc:
            if not _is_lock_error(exc):
                raise StoreUnavailable(f"Store unavailable: {exc}") from exc
            logger.warning(f"Could not switch {self.path} to WAL mode: {exc}")
        finally:
            conn.close()
        self.run(self._create_tables)
        # Rebuilding a referenced table must not cascade into loans and reservations
        self.run(self._drop_plaintext_passwords, foreign_keys=False)
        self.run(self._migrate)
        self.run(self._seed_defaults)

    @staticmethod
    def _create_tables(conn: sqlite3.Connection) -> None:
        conn.execute(_USERS_TABLE.format(name="users"))
        conn.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                category TEXT,
                year INTEGER,
                status TEXT NOT NULL DEFAULT 'Available'
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                book_id INTEGER NOT NULL,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                fine REAL NOT NULL DEFAULT 0,
                fine_settled INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS reservations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                book_id INTEGER NOT NULL,
                reservation_date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'Pending',
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

    @staticmethod
    def _drop_plaintext_passwords(conn: sqlite3.Connection) -> None:
        """Replace the plaintext ``password`` column of older stores with salted hashes.

        Runs with foreign keys off: the users table is rebuilt under a new
        name and swapped in, so rows referencing users keep their ids.
        """
        columns = [row[1] for row in conn.execute("PRAGMA table_info(users)").fetchall()]
        if "password" not in columns:
            return
        existing_hash = "password_hash" if "password_hash" in columns else "''"
        rows = conn.execute(
            f"SELECT id, name, role, email, password, {existing_hash} AS password_hash FROM users"
        ).fetchall()

        conn.execute("DROP TABLE IF EXISTS users_migrated")
        conn.execute(_USERS_TABLE.format(name="users_migrated"))
        for row in rows:
            digest = row["password_hash"] or (hash_password(row["password"]) if row["password"] else "")
            conn.execute(
                "INSERT INTO users_migrated (id, name, role, email, password_hash) VALUES (?, ?, ?, ?, ?)",
                (row["id"], row["name"], row["role"] or Role.STUDENT.value, row["email"], digest),
            )
        conn.execute("DROP TABLE users")
        conn.execute("ALTER TABLE users_migrated RENAME TO users")
        logger.info(f"Hashed {len(rows)} stored password(s) and dropped the plaintext column")

    @staticmethod
    def _migrate(conn: sqlite3.Connection) -> None:
        """Bring stores written by older releases up to the current layout."""

        def columns(table: str) -> list:
            return [row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]

        if "password_hash" not in columns("users"):
            conn.execute("ALTER TABLE users ADD COLUMN password_hash TEXT NOT NULL DEFAULT ''")
        if "status" not in columns("books"):
            conn.execute("ALTER TABLE books ADD COLUMN status TEXT NOT NULL DEFAULT 'Available'")
        loan_columns = columns("loans")
        if "fine" not in loan_columns:
            conn.execute("ALTER TABLE loans ADD COLUMN fine REAL NOT NULL DEFAULT 0")
        if "fine_settled" not in loan_columns:
            conn.execute("ALTER TABLE loans ADD COLUMN fine_settled INTEGER NOT NULL DEFAULT 0")

        # Older stores used lowercase status labels
        conn.execute("UPDATE books SET status = 'Available' WHERE lower(status) = 'available' AND status != 'Available'")
        conn.execute("UPDATE books SET status = 'Borrowed' WHERE lower(status) = 'borrowed' AND status != 'Borrowed'")
        for label in ("Pending", "Completed", "Canceled"):
            conn.execute(
                "UPDATE reservations SET status = ? WHERE lower(status) = lower(?) AND status != ?",
                (label, label, label),
            )

        # Older stores kept loans in a table named "transactions"
        legacy = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'transactions'"
        ).fetchone()
        if legacy:
            (loan_count,) = conn.execute("SELECT COUNT(*) FROM loans").fetchone()
            if loan_count == 0:
                # Only the newest open row of a book stays open; older ones close on their borrow date
                superseded = conn.execute(f"""
                    SELECT t.id, t.book_id FROM transactions t
                    WHERE {_LEGACY_IMPORTABLE} AND t.return_date IS NULL AND EXISTS (
                        SELECT 1 FROM transactions n
                        WHERE n.book_id = t.book_id AND n.id > t.id AND n.return_date IS NULL
                          AND n.borrow_date IS NOT NULL AND n.due_date IS NOT NULL
                    )
                """).fetchall()
                closed_ids = ", ".join(str(row["id"]) for row in superseded) or "NULL"
                moved = conn.execute(f"""
                    INSERT INTO loans (id, user_id, book_id, borrow_date, due_date, return_date, fine, fine_settled)
                    SELECT t.id, t.user_id, t.book_id, t.borrow_date, t.due_date,
                           CASE WHEN t.id IN ({closed_ids})
                                THEN t.borrow_date ELSE t.return_date END,
                           IFNULL(t.fine, 0), IFNULL(t.fine_settled, 0)
                    FROM transactions t
                    WHERE {_LEGACY_IMPORTABLE}
                """).rowcount
                logger.info(f"Migrated {moved} loan(s) from the legacy transactions table")
                for row in superseded:
                    logger.warning(
                        f"Legacy loan {row['id']} was a second open loan of book {row['book_id']}; closed it"
                    )

        # Book status follows open loans
        fixed = conn.execute("""
            UPDATE books SET status = CASE
                WHEN EXISTS (SELECT 1 FROM loans l WHERE l.book_id = books.id AND l.return_date IS NULL)
                THEN 'Borrowed' ELSE 'Available' END
            WHERE status IS NOT CASE
                WHEN EXISTS (SELECT 1 FROM loans l WHERE l.book_id = books.id AND l.return_date IS NULL)
                THEN 'Borrowed' ELSE 'Available' END
        """).rowcount
        if fixed:
            logger.warning(f"Corrected the status of {fixed} book(s) to match open loans")

        conn.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_user_open ON loans(user_id) WHERE return_date IS NULL")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_due_date ON loans(due_date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_reservations_book ON reservations(book_id, status)")
        # At most one open loan per book, whatever the caller does
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_open_book ON loans(book_id) WHERE return_date IS NULL"
        )

    def _seed_defaults(self, conn: sqlite3.Connection) -> None:
        conn.executemany(
            "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
            list(DEFAULT_VALUES.items()),
        )
        if not self.seed_admin:
            return
        existing = conn.execute("SELECT 1 FROM users WHERE email = ?", (settings.admin_email,)).fetchone()
        if existing is None:
            conn.execute(
                "INSERT INTO users (name, role, email, password_hash) VALUES (?, ?, ?, ?)",
                ("Admin", "Admin", settings.admin_email, hash_password(settings.admin_password)),
            )
            logger.info(f"Created default administrator {settings.admin_email}")
