from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    STUDENT = "Student"
    LIBRARIAN = "Librarian"
    ADMIN = "Admin"


class BookStatus(str, Enum):
    AVAILABLE = "Available"
    BORROWED = "Borrowed"


class ReservationStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    CANCELED = "Canceled"


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class User:
    """A library member. The role is a label only, no capability checks hang off it."""

    id: int
    name: str
    email: str
    role: Role = Role.STUDENT

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, "role": self.role.value}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "User":
        return User(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            role=Role(data.get("role") or Role.STUDENT.value),
        )


@dataclass
class Book:
    id: int
    title: str
    author: str
    category: Optional[str] = None
    year: Optional[int] = None
    status: BookStatus = BookStatus.AVAILABLE

    @property
    def is_available(self) -> bool:
        return self.status is BookStatus.AVAILABLE

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (#{self.id})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "year": self.year,
            "status": self.status.value,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            category=data.get("category"),
            year=data.get("year"),
            status=BookStatus(data.get("status") or BookStatus.AVAILABLE.value),
        )


@dataclass
class Loan:
    """One borrow/return event. ``user_name`` and ``book_title`` are only
    filled in by listing queries that join the owning records."""

    id: int
    user_id: int
    book_id: int
    borrow_date: date
    due_date: date
    return_date: Optional[date] = None
    fine: float = 0.0
    fine_settled: bool = False
    user_name: Optional[str] = None
    book_title: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.return_date is None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrow_date": _format_date(self.borrow_date),
            "due_date": _format_date(self.due_date),
            "return_date": _format_date(self.return_date),
            "fine": self.fine,
            "fine_settled": self.fine_settled,
        }
        if self.user_name is not None:
            data["user_name"] = self.user_name
        if self.book_title is not None:
            data["book_title"] = self.book_title
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Loan":
        return Loan(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            borrow_date=_parse_date(data["borrow_date"]),
            due_date=_parse_date(data["due_date"]),
            return_date=_parse_date(data.get("return_date")),
            fine=float(data.get("fine") or 0.0),
            fine_settled=bool(data.get("fine_settled")),
            user_name=data.get("user_name"),
            book_title=data.get("book_title"),
        )


@dataclass
class Reservation:
    id: int
    user_id: int
    book_id: int
    reservation_date: date
    status: ReservationStatus = ReservationStatus.PENDING
    user_name: Optional[str] = None
    book_title: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status is ReservationStatus.PENDING

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "reservation_date": _format_date(self.reservation_date),
            "status": self.status.value,
        }
        if self.user_name is not None:
            data["user_name"] = self.user_name
        if self.book_title is not None:
            data["book_title"] = self.book_title
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Reservation":
        return Reservation(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            reservation_date=_parse_date(data["reservation_date"]),
            status=ReservationStatus(data.get("status") or ReservationStatus.PENDING.value),
            user_name=data.get("user_name"),
            book_title=data.get("book_title"),
        )
