import sqlite3
from datetime import date
from typing import List, Optional

from .models import Reservation, ReservationStatus

_RESERVATION_COLUMNS = "r.id, r.user_id, r.book_id, r.reservation_date, r.status"
_LISTING = f"""
    SELECT {_RESERVATION_COLUMNS}, u.name AS user_name, b.title AS book_title
    FROM reservations r
    JOIN users u ON r.user_id = u.id
    JOIN books b ON r.book_id = b.id
"""


class ReservationQueue:
    """Reservation requests. Resolution is always a manual status change."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find(self, reservation_id: int) -> Optional[Reservation]:
        row = self.conn.execute(
            f"SELECT {_RESERVATION_COLUMNS} FROM reservations r WHERE r.id = ?", (reservation_id,)
        ).fetchone()
        return Reservation.from_dict(dict(row)) if row else None

    def create(self, user_id: int, book_id: int, reservation_date: date) -> Reservation:
        cursor = self.conn.execute(
            "INSERT INTO reservations (user_id, book_id, reservation_date, status) VALUES (?, ?, ?, ?)",
            (user_id, book_id, reservation_date.isoformat(), ReservationStatus.PENDING.value),
        )
        return Reservation(
            id=cursor.lastrowid,
            user_id=user_id,
            book_id=book_id,
            reservation_date=reservation_date,
        )

    def set_status(self, reservation_id: int, status: ReservationStatus) -> bool:
        """Move a pending reservation to ``status``; False if it was not pending."""
        cursor = self.conn.execute(
            "UPDATE reservations SET status = ? WHERE id = ? AND status = ?",
            (ReservationStatus(status).value, reservation_id, ReservationStatus.PENDING.value),
        )
        return cursor.rowcount > 0

    def list(self) -> List[Reservation]:
        rows = self.conn.execute(f"{_LISTING} ORDER BY r.id DESC").fetchall()
        return [Reservation.from_dict(dict(row)) for row in rows]

    def list_pending_for_book(self, book_id: int) -> List[Reservation]:
        rows = self.conn.execute(
            f"{_LISTING} WHERE r.book_id = ? AND r.status = ? ORDER BY r.reservation_date, r.id",
            (book_id, ReservationStatus.PENDING.value),
        ).fetchall()
        return [Reservation.from_dict(dict(row)) for row in rows]
