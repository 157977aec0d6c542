import hashlib
import hmac
import secrets
import sqlite3
from typing import List, Optional, Union

from .errors import DuplicateRecord
from .models import Role, User
from .validators import TextValidator

_USER_COLUMNS = "id, name, email, role"
_HASH_ITERATIONS = 100_000


def hash_password(password: str) -> str:
    """Salted PBKDF2-SHA256 digest stored as ``salt$hexdigest``."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), _HASH_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    if not stored or "$" not in stored:
        return False
    salt, expected = stored.split("$", 1)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), _HASH_ITERATIONS)
    return hmac.compare_digest(digest.hex(), expected)


class Membership:
    """User records and their role labels."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def find(self, user_id: int) -> Optional[User]:
        row = self.conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def find_by_email(self, email: str) -> Optional[User]:
        row = self.conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", ((email or "").strip().lower(),)
        ).fetchone()
        return User.from_dict(dict(row)) if row else None

    def list_all(self) -> List[User]:
        rows = self.conn.execute(f"SELECT {_USER_COLUMNS} FROM users ORDER BY id DESC").fetchall()
        return [User.from_dict(dict(row)) for row in rows]

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    def create(self, name: str, email: str, password: str = "", role: Role = Role.STUDENT) -> User:
        name = TextValidator.require_text("Name", name)
        email = TextValidator.validate_email(email)
        role = TextValidator.validate_role(role)
        if self.find_by_email(email):
            raise DuplicateRecord(f"A user with email {email} already exists.")
        cursor = self.conn.execute(
            "INSERT INTO users (name, role, email, password_hash) VALUES (?, ?, ?, ?)",
            (name, role.value, email, hash_password(password) if password else ""),
        )
        return User(id=cursor.lastrowid, name=name, email=email, role=role)

    def update(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> Optional[User]:
        user = self.find(user_id)
        if not user:
            return None
        if name is not None:
            user.name = TextValidator.require_text("Name", name)
        if email is not None:
            email = TextValidator.validate_email(email)
            other = self.find_by_email(email)
            if other and other.id != user_id:
                raise DuplicateRecord(f"A user with email {email} already exists.")
            user.email = email
        if role is not None:
            user.role = TextValidator.validate_role(role)
        self.conn.execute(
            "UPDATE users SET name = ?, email = ?, role = ? WHERE id = ?",
            (user.name, user.email, user.role.value, user_id),
        )
        if password is not None:
            self.conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?",
                (hash_password(password) if password else "", user_id),
            )
        return user

    def set_role(self, user_id: int, role: Union[Role, str]) -> Optional[User]:
        return self.update(user_id, role=role)

    def delete(self, user_id: int) -> bool:
        """Delete a user row. Callers holding open loans must release books first."""
        cursor = self.conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return cursor.rowcount > 0

    def check_password(self, user_id: int, password: str) -> bool:
        row = self.conn.execute("SELECT password_hash FROM users WHERE id = ?", (user_id,)).fetchone()
        return bool(row) and verify_password(password, row["password_hash"])
