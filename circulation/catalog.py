import sqlite3
from typing import List, Optional

from .models import Book, BookStatus
from .validators import TextValidator

_BOOK_COLUMNS = "id, title, author, category, year, status"


class Catalog:
    """Book records and their availability status."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find(self, book_id: int) -> Optional[Book]:
        row = self.conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def search(self, text: str) -> List[Book]:
        """Case-insensitive substring match on title, author and category, ordered by title."""
        # LIKE wildcards in the text match literally
        needle = (text or "").strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{needle}%"
        rows = self.conn.execute(
            f"""
            SELECT {_BOOK_COLUMNS} FROM books
            WHERE lower(title) LIKE ? ESCAPE '\\'
               OR lower(author) LIKE ? ESCAPE '\\'
               OR lower(IFNULL(category, '')) LIKE ? ESCAPE '\\'
            ORDER BY title COLLATE NOCASE, id
            """,
            (pattern, pattern, pattern),
        ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def list_books(self, status: Optional[BookStatus] = None) -> List[Book]:
        if status is None:
            rows = self.conn.execute(
                f"SELECT {_BOOK_COLUMNS} FROM books ORDER BY title COLLATE NOCASE, id"
            ).fetchall()
        else:
            rows = self.conn.execute(
                f"SELECT {_BOOK_COLUMNS} FROM books WHERE status = ? ORDER BY title COLLATE NOCASE, id",
                (BookStatus(status).value,),
            ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def count(self, status: Optional[BookStatus] = None) -> int:
        if status is None:
            return self.conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
        return self.conn.execute(
            "SELECT COUNT(*) FROM books WHERE status = ?", (BookStatus(status).value,)
        ).fetchone()[0]

    def create(
        self,
        title: str,
        author: str,
        category: Optional[str] = None,
        year: Optional[int] = None,
    ) -> Book:
        """Add a book. New books are always Available."""
        title = TextValidator.require_text("Title", title)
        author = TextValidator.require_text("Author", author)
        category = TextValidator.optional_text(category)
        year = TextValidator.validate_year(year)
        cursor = self.conn.execute(
            "INSERT INTO books (title, author, category, year, status) VALUES (?, ?, ?, ?, ?)",
            (title, author, category, year, BookStatus.AVAILABLE.value),
        )
        return Book(id=cursor.lastrowid, title=title, author=author, category=category, year=year)

    def update(
        self,
        book_id: int,
        *,
        title: Optional[str] = None,
        author: Optional[str] = None,
        category: Optional[str] = None,
        year: Optional[int] = None,
    ) -> Optional[Book]:
        """Update descriptive fields. Status is deliberately not editable here."""
        book = self.find(book_id)
        if not book:
            return None
        if title is not None:
            book.title = TextValidator.require_text("Title", title)
        if author is not None:
            book.author = TextValidator.require_text("Author", author)
        if category is not None:
            book.category = TextValidator.optional_text(category)
        if year is not None:
            book.year = TextValidator.validate_year(year)
        self.conn.execute(
            "UPDATE books SET title = ?, author = ?, category = ?, year = ? WHERE id = ?",
            (book.title, book.author, book.category, book.year, book_id),
        )
        return book

    def delete(self, book_id: int) -> bool:
        """Remove a book; its loans and reservations go with it."""
        cursor = self.conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        return cursor.rowcount > 0

    def set_status(self, book_id: int, status: BookStatus, *, expected: Optional[BookStatus] = None) -> bool:
        """Engine-only status write.

        With ``expected`` the update only applies if the stored status still
        matches, and the return value tells whether it did.
        """
        status = BookStatus(status)
        if expected is None:
            cursor = self.conn.execute("UPDATE books SET status = ? WHERE id = ?", (status.value, book_id))
        else:
            cursor = self.conn.execute(
                "UPDATE books SET status = ? WHERE id = ? AND status = ?",
                (status.value, book_id, BookStatus(expected).value),
            )
        return cursor.rowcount > 0
