import logging
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .backup import backup_database
from .catalog import Catalog
from .database import Database
from .engine import CirculationEngine, Clock
from .errors import NotFound
from .ledger import LoanLedger
from .membership import Membership
from .models import Book, BookStatus, Loan, Reservation, ReservationStatus, Role, User
from .reservations import ReservationQueue
from .settings_store import CirculationPolicy, SettingsStore

logger = logging.getLogger(__name__)


class Library:
    """Host-facing facade over one circulation store.

    Forms, the CLI and the HTTP API talk to this class only. Circulation
    operations are delegated to the engine; record maintenance and listings
    run in their own short transactions.
    """

    def __init__(
        self,
        db_file: Optional[str] = None,
        *,
        clock: Clock = date.today,
        seed_admin: Optional[bool] = None,
    ) -> None:
        self.db = Database(db_file, seed_admin=seed_admin)
        self.db.initialize()  # Ensure tables exist and migrate older stores
        self.engine = CirculationEngine(self.db, clock=clock)

    @property
    def db_file(self) -> str:
        return self.db.path

    # ------------------------- Circulation ------------------------- #
    def borrow(self, user_id: int, book_id: int, *, policy: Optional[CirculationPolicy] = None) -> Loan:
        return self.engine.borrow(user_id, book_id, policy=policy)

    def return_loan(self, loan_id: int, *, policy: Optional[CirculationPolicy] = None) -> Loan:
        return self.engine.return_loan(loan_id, policy=policy)

    def reserve(self, user_id: int, book_id: int) -> Reservation:
        return self.engine.reserve(user_id, book_id)

    def resolve_reservation(self, reservation_id: int, outcome: Union[ReservationStatus, str]) -> Reservation:
        return self.engine.resolve_reservation(reservation_id, outcome)

    def settle_fine(self, loan_id: int) -> Loan:
        return self.engine.settle_fine(loan_id)

    def update_settings(self, updates: Mapping[str, Any]) -> CirculationPolicy:
        return self.engine.update_settings(updates)

    def get_policy(self) -> CirculationPolicy:
        return self.engine.get_policy()

    def get_settings(self) -> Dict[str, str]:
        return self.db.read(lambda conn: SettingsStore(conn).all())

    # ------------------------- Books ------------------------- #
    def add_book(
        self, title: str, author: str, category: Optional[str] = None, year: Optional[int] = None
    ) -> Book:
        book = self.db.run(lambda conn: Catalog(conn).create(title, author, category, year))
        logger.info(f"Book {book.id} added: {book.title}")
        return book

    def update_book(self, book_id: int, **fields: Any) -> Book:
        book = self.db.run(lambda conn: Catalog(conn).update(book_id, **fields))
        if book is None:
            raise NotFound(f"Book {book_id} not found.")
        return book

    def remove_book(self, book_id: int) -> bool:
        removed = self.db.run(lambda conn: Catalog(conn).delete(book_id))
        if removed:
            logger.info(f"Book {book_id} removed")
        return removed

    def find_book(self, book_id: int) -> Optional[Book]:
        return self.db.read(lambda conn: Catalog(conn).find(book_id))

    def get_book(self, book_id: int) -> Book:
        book = self.find_book(book_id)
        if book is None:
            raise NotFound(f"Book {book_id} not found.")
        return book

    def search_books(self, query: str) -> List[Book]:
        return self.db.read(lambda conn: Catalog(conn).search(query))

    def list_books(self, status: Optional[BookStatus] = None) -> List[Book]:
        return self.db.read(lambda conn: Catalog(conn).list_books(status))

    # ------------------------- Users ------------------------- #
    def add_user(self, name: str, email: str, password: str = "", role: Role = Role.STUDENT) -> User:
        user = self.db.run(lambda conn: Membership(conn).create(name, email, password, role))
        logger.info(f"User {user.id} added: {user.email} ({user.role.value})")
        return user

    def update_user(self, user_id: int, **fields: Any) -> User:
        user = self.db.run(lambda conn: Membership(conn).update(user_id, **fields))
        if user is None:
            raise NotFound(f"User {user_id} not found.")
        return user

    def set_role(self, user_id: int, role: Union[Role, str]) -> User:
        user = self.db.run(lambda conn: Membership(conn).set_role(user_id, role))
        if user is None:
            raise NotFound(f"User {user_id} not found.")
        logger.info(f"User {user_id} role set to {user.role.value}")
        return user

    def remove_user(self, user_id: int) -> None:
        self.engine.remove_user(user_id)

    def find_user(self, user_id: int) -> Optional[User]:
        return self.db.read(lambda conn: Membership(conn).find(user_id))

    def get_user(self, user_id: int) -> User:
        user = self.find_user(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found.")
        return user

    def list_users(self) -> List[User]:
        return self.db.read(lambda conn: Membership(conn).list_all())

    # ------------------------- Listings ------------------------- #
    def get_loan(self, loan_id: int) -> Loan:
        loan = self.db.read(lambda conn: LoanLedger(conn).find(loan_id))
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found.")
        return loan

    def list_open_loans(self) -> List[Loan]:
        return self.db.read(lambda conn: LoanLedger(conn).list_open())

    def list_loans(self) -> List[Loan]:
        return self.db.read(lambda conn: LoanLedger(conn).list_all())

    def list_user_loans(self, user_id: int) -> List[Loan]:
        return self.db.read(lambda conn: LoanLedger(conn).list_by_user(user_id))

    def list_fines(self, unsettled_only: bool = False) -> List[Loan]:
        return self.db.read(lambda conn: LoanLedger(conn).list_fines(unsettled_only))

    def list_reservations(self) -> List[Reservation]:
        return self.db.read(lambda conn: ReservationQueue(conn).list())

    def list_book_reservations(self, book_id: int) -> List[Reservation]:
        """Pending reservations of one book, oldest first."""
        return self.db.read(lambda conn: ReservationQueue(conn).list_pending_for_book(book_id))

    def get_statistics(self) -> Dict[str, Any]:
        def work(conn) -> Dict[str, Any]:
            catalog = Catalog(conn)
            return {
                "total_books": catalog.count(),
                "borrowed_books": catalog.count(BookStatus.BORROWED),
                "total_users": Membership(conn).count(),
                "unsettled_fines": LoanLedger(conn).unsettled_fines_total(),
            }

        return self.db.read(work)

    # ------------------------- Utilities ------------------------- #
    def backup(self, destination: Optional[Union[str, Path]] = None) -> Path:
        return backup_database(self.db, destination)

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
