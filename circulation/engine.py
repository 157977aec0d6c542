"""Circulation rules: borrowing, returning, reserving, fines and settings.

Each public method is one atomic unit executed through ``Database.run``:
either every write it makes commits or none does. The engine is the only
writer of book status and loan fields.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, timedelta
from typing import Any, Callable, Mapping, Optional, Union

from .catalog import Catalog
from .database import Database
from .errors import (
    AlreadyResolved,
    AlreadyReturned,
    InvalidRecord,
    LimitExceeded,
    NotAvailable,
    NotFound,
)
from .ledger import LoanLedger
from .membership import Membership
from .models import BookStatus, Loan, Reservation, ReservationStatus
from .reservations import ReservationQueue
from .settings_store import CirculationPolicy, SettingsStore, validate_updates

logger = logging.getLogger(__name__)

Clock = Callable[[], date]


def late_days(due_date: date, return_date: date) -> int:
    """Whole calendar days past the due date; early or on-time returns give 0."""
    return max(0, (return_date - due_date).days)


def compute_fine(due_date: date, return_date: date, fine_per_day: float) -> float:
    return late_days(due_date, return_date) * fine_per_day


def _parse_outcome(outcome: Union[ReservationStatus, str]) -> ReservationStatus:
    if isinstance(outcome, ReservationStatus):
        return outcome
    for status in ReservationStatus:
        if str(outcome).strip().lower() == status.value.lower():
            return status
    raise InvalidRecord(f"Unknown reservation outcome {outcome!r}.")


class CirculationEngine:
    """Orchestrates the stores of one database.

    ``policy`` may be passed to any rule-dependent operation to run it
    against an explicit settings snapshot; otherwise the snapshot is read
    from the settings table inside the operation's own transaction.
    """

    def __init__(self, db: Database, clock: Clock = date.today) -> None:
        self.db = db
        self.clock = clock

    @staticmethod
    def _resolve_policy(conn: sqlite3.Connection, policy: Optional[CirculationPolicy]) -> CirculationPolicy:
        return policy if policy is not None else SettingsStore(conn).snapshot()

    # ------------------------- Loans ------------------------- #
    def borrow(self, user_id: int, book_id: int, *, policy: Optional[CirculationPolicy] = None) -> Loan:
        def work(conn: sqlite3.Connection) -> Loan:
            active = self._resolve_policy(conn, policy)
            catalog = Catalog(conn)
            ledger = LoanLedger(conn)

            if Membership(conn).find(user_id) is None:
                raise NotFound(f"User {user_id} not found.")
            open_loans = ledger.open_loan_count(user_id)
            if open_loans >= active.max_borrow:
                raise LimitExceeded(
                    f"User {user_id} already has {open_loans} open loan(s); the limit is {active.max_borrow}."
                )
            book = catalog.find(book_id)
            if book is None:
                raise NotFound(f"Book {book_id} not found.")
            if not book.is_available or ledger.open_loan(book_id) is not None:
                raise NotAvailable(f"Book {book_id} is not available.")

            today = self.clock()
            due_date = today + timedelta(days=active.borrow_days)
            try:
                loan = ledger.create(user_id, book_id, today, due_date)
            except sqlite3.IntegrityError as exc:
                # An open loan already exists even though the status said Available
                raise NotAvailable(f"Book {book_id} is not available.") from exc
            if not catalog.set_status(book_id, BookStatus.BORROWED, expected=BookStatus.AVAILABLE):
                raise NotAvailable(f"Book {book_id} is not available.")
            return loan

        loan = self.db.run(work)
        logger.info(f"Loan {loan.id}: user {user_id} borrowed book {book_id}, due {loan.due_date.isoformat()}")
        return loan

    def return_loan(self, loan_id: int, *, policy: Optional[CirculationPolicy] = None) -> Loan:
        def work(conn: sqlite3.Connection) -> Loan:
            ledger = LoanLedger(conn)
            loan = ledger.find(loan_id)
            if loan is None:
                raise NotFound(f"Loan {loan_id} not found.")
            if not loan.is_open:
                raise AlreadyReturned(f"Loan {loan_id} was already returned on {loan.return_date.isoformat()}.")

            active = self._resolve_policy(conn, policy)
            today = self.clock()
            fine = compute_fine(loan.due_date, today, active.fine_per_day)
            closed = ledger.close_loan(loan_id, today, fine)
            if closed is None:
                raise AlreadyReturned(f"Loan {loan_id} was already returned.")
            Catalog(conn).set_status(loan.book_id, BookStatus.AVAILABLE)
            return closed

        loan = self.db.run(work)
        logger.info(f"Loan {loan.id}: book {loan.book_id} returned, fine {loan.fine:.2f}")
        return loan

    def settle_fine(self, loan_id: int) -> Loan:
        """Mark a returned loan's fine as paid. Settling twice is a no-op."""

        def work(conn: sqlite3.Connection) -> Loan:
            ledger = LoanLedger(conn)
            loan = ledger.find(loan_id)
            if loan is None:
                raise NotFound(f"Loan {loan_id} not found.")
            if loan.fine_settled:
                return loan
            if loan.is_open:
                raise InvalidRecord(f"Loan {loan_id} has not been returned; there is no fine to settle yet.")
            ledger.settle_fine(loan_id)
            return ledger.find(loan_id)

        loan = self.db.run(work)
        logger.info(f"Loan {loan.id}: fine {loan.fine:.2f} settled")
        return loan

    # ------------------------- Reservations ------------------------- #
    def reserve(self, user_id: int, book_id: int) -> Reservation:
        """Queue a request for a book, available or not."""

        def work(conn: sqlite3.Connection) -> Reservation:
            if Membership(conn).find(user_id) is None:
                raise NotFound(f"User {user_id} not found.")
            if Catalog(conn).find(book_id) is None:
                raise NotFound(f"Book {book_id} not found.")
            return ReservationQueue(conn).create(user_id, book_id, self.clock())

        reservation = self.db.run(work)
        logger.info(f"Reservation {reservation.id}: user {user_id} reserved book {book_id}")
        return reservation

    def resolve_reservation(
        self, reservation_id: int, outcome: Union[ReservationStatus, str]
    ) -> Reservation:
        outcome = _parse_outcome(outcome)
        if outcome is ReservationStatus.PENDING:
            raise InvalidRecord("A reservation can only be resolved as Completed or Canceled.")

        def work(conn: sqlite3.Connection) -> Reservation:
            queue = ReservationQueue(conn)
            reservation = queue.find(reservation_id)
            if reservation is None:
                raise NotFound(f"Reservation {reservation_id} not found.")
            if not reservation.is_pending or not queue.set_status(reservation_id, outcome):
                raise AlreadyResolved(
                    f"Reservation {reservation_id} is already {reservation.status.value}."
                )
            reservation.status = outcome
            return reservation

        reservation = self.db.run(work)
        logger.info(f"Reservation {reservation.id} resolved as {reservation.status.value}")
        return reservation

    # ------------------------- Settings ------------------------- #
    def get_policy(self) -> CirculationPolicy:
        return self.db.read(lambda conn: SettingsStore(conn).snapshot())

    def update_settings(self, updates: Mapping[str, Any]) -> CirculationPolicy:
        """Apply a batch of settings: every value is validated before any is written."""
        cleaned = validate_updates(updates)

        def work(conn: sqlite3.Connection) -> CirculationPolicy:
            store = SettingsStore(conn)
            for key, value in cleaned.items():
                store.set(key, value)
            return store.snapshot()

        policy = self.db.run(work)
        if cleaned:
            logger.info(f"Settings updated: {', '.join(f'{k}={v}' for k, v in cleaned.items())}")
        return policy

    # ------------------------- Membership ------------------------- #
    def remove_user(self, user_id: int) -> None:
        """Delete a user, first releasing every book they still hold."""

        def work(conn: sqlite3.Connection) -> int:
            members = Membership(conn)
            if members.find(user_id) is None:
                raise NotFound(f"User {user_id} not found.")
            catalog = Catalog(conn)
            released = LoanLedger(conn).open_books_for_user(user_id)
            for book_id in released:
                catalog.set_status(book_id, BookStatus.AVAILABLE)
            members.delete(user_id)
            return len(released)

        released = self.db.run(work)
        logger.info(f"User {user_id} removed, {released} book(s) released")
