import sqlite3
from datetime import date
from typing import List, Optional

from .models import Loan

_LOAN_COLUMNS = "l.id, l.user_id, l.book_id, l.borrow_date, l.due_date, l.return_date, l.fine, l.fine_settled"
# Listing rows carry the borrower's name and the book's title
_LISTING = f"""
    SELECT {_LOAN_COLUMNS}, u.name AS user_name, b.title AS book_title
    FROM loans l
    JOIN users u ON l.user_id = u.id
    JOIN books b ON l.book_id = b.id
"""


class LoanLedger:
    """Borrow/return records. Only the engine writes here."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find(self, loan_id: int) -> Optional[Loan]:
        row = self.conn.execute(f"SELECT {_LOAN_COLUMNS} FROM loans l WHERE l.id = ?", (loan_id,)).fetchone()
        return Loan.from_dict(dict(row)) if row else None

    def open_loan_count(self, user_id: int) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM loans WHERE user_id = ? AND return_date IS NULL", (user_id,)
        ).fetchone()[0]

    def open_loan(self, book_id: int) -> Optional[Loan]:
        row = self.conn.execute(
            f"SELECT {_LOAN_COLUMNS} FROM loans l WHERE l.book_id = ? AND l.return_date IS NULL",
            (book_id,),
        ).fetchone()
        return Loan.from_dict(dict(row)) if row else None

    def create(self, user_id: int, book_id: int, borrow_date: date, due_date: date) -> Loan:
        cursor = self.conn.execute(
            "INSERT INTO loans (user_id, book_id, borrow_date, due_date, return_date, fine, fine_settled) "
            "VALUES (?, ?, ?, ?, NULL, 0, 0)",
            (user_id, book_id, borrow_date.isoformat(), due_date.isoformat()),
        )
        return Loan(
            id=cursor.lastrowid,
            user_id=user_id,
            book_id=book_id,
            borrow_date=borrow_date,
            due_date=due_date,
        )

    def close_loan(self, loan_id: int, return_date: date, fine: float) -> Optional[Loan]:
        """Set the return date and fine of an open loan.

        Returns None when the loan is missing or was already closed, so a
        lost race never overwrites an earlier return.
        """
        cursor = self.conn.execute(
            "UPDATE loans SET return_date = ?, fine = ? WHERE id = ? AND return_date IS NULL",
            (return_date.isoformat(), fine, loan_id),
        )
        if cursor.rowcount == 0:
            return None
        return self.find(loan_id)

    def settle_fine(self, loan_id: int) -> bool:
        cursor = self.conn.execute(
            "UPDATE loans SET fine_settled = 1 WHERE id = ? AND fine_settled = 0", (loan_id,)
        )
        return cursor.rowcount > 0

    def open_books_for_user(self, user_id: int) -> List[int]:
        rows = self.conn.execute(
            "SELECT book_id FROM loans WHERE user_id = ? AND return_date IS NULL", (user_id,)
        ).fetchall()
        return [row["book_id"] for row in rows]

    def list_open(self) -> List[Loan]:
        rows = self.conn.execute(f"{_LISTING} WHERE l.return_date IS NULL ORDER BY l.due_date, l.id").fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def list_all(self) -> List[Loan]:
        rows = self.conn.execute(f"{_LISTING} ORDER BY l.id DESC").fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def list_by_user(self, user_id: int) -> List[Loan]:
        rows = self.conn.execute(f"{_LISTING} WHERE l.user_id = ? ORDER BY l.id DESC", (user_id,)).fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def list_fines(self, unsettled_only: bool = False) -> List[Loan]:
        """Returned loans that carry a fine, newest first."""
        query = f"{_LISTING} WHERE l.return_date IS NOT NULL AND l.fine > 0"
        if unsettled_only:
            query += " AND l.fine_settled = 0"
        rows = self.conn.execute(f"{query} ORDER BY l.id DESC").fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def unsettled_fines_total(self) -> float:
        (total,) = self.conn.execute(
            "SELECT IFNULL(SUM(fine), 0) FROM loans WHERE fine > 0 AND fine_settled = 0"
        ).fetchone()
        return float(total)
