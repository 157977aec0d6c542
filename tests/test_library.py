import sqlite3

import pytest

from circulation import BookStatus, DuplicateRecord, InvalidRecord, Library, NotFound, Role
from circulation.membership import Membership


def test_add_list_and_find(lib):
    assert lib.list_books() == []

    book = lib.add_book("  Ulysses ", "James Joyce", "Fiction", "1922")
    assert book.title == "Ulysses"
    assert book.year == 1922
    assert book.status is BookStatus.AVAILABLE

    assert lib.find_book(book.id) == book
    assert [b.title for b in lib.list_books()] == ["Ulysses"]
    assert lib.find_book(999) is None
    with pytest.raises(NotFound):
        lib.get_book(999)


def test_add_book_requires_title_and_author(lib):
    with pytest.raises(InvalidRecord, match="Title cannot be empty"):
        lib.add_book("  ", "Someone")
    with pytest.raises(InvalidRecord, match="Author cannot be empty"):
        lib.add_book("Something", "")
    with pytest.raises(InvalidRecord, match="year"):
        lib.add_book("Something", "Someone", year="soon")


def test_search_is_case_insensitive_and_ordered_by_title(lib):
    lib.add_book("The Hobbit", "J.R.R. Tolkien", "Fantasy")
    lib.add_book("anathem", "Neal Stephenson", "Science Fiction")
    lib.add_book("Foundation", "Isaac Asimov", "science fiction")

    assert [b.title for b in lib.search_books("SCIENCE")] == ["anathem", "Foundation"]
    assert [b.title for b in lib.search_books("tolk")] == ["The Hobbit"]
    assert lib.search_books("poetry") == []
    assert len(lib.search_books("")) == 3


def test_list_books_by_status(lib, student):
    first = lib.add_book("A Tale", "Author")
    lib.add_book("B Tale", "Author")
    lib.borrow(student.id, first.id)

    assert [b.title for b in lib.list_books(BookStatus.AVAILABLE)] == ["B Tale"]
    assert [b.title for b in lib.list_books(BookStatus.BORROWED)] == ["A Tale"]


def test_update_book_keeps_status(lib, student, book):
    lib.borrow(student.id, book.id)
    updated = lib.update_book(book.id, title="Dune Messiah", year=1969)
    assert updated.title == "Dune Messiah"
    assert updated.author == "Frank Herbert"
    assert lib.get_book(book.id).status is BookStatus.BORROWED

    with pytest.raises(NotFound):
        lib.update_book(999, title="Nothing")


def test_persistence(db_file, clock):
    first = Library(db_file=db_file, clock=clock, seed_admin=False)
    first.add_book("Sapiens", "Yuval Noah Harari")

    second = Library(db_file=db_file, clock=clock, seed_admin=False)
    assert [b.title for b in second.list_books()] == ["Sapiens"]


def test_add_user_normalizes_and_rejects_duplicates(lib):
    user = lib.add_user("Grace", " Grace@Example.com ", role="librarian")
    assert user.email == "grace@example.com"
    assert user.role is Role.LIBRARIAN

    with pytest.raises(DuplicateRecord, match="grace@example.com"):
        lib.add_user("Another Grace", "GRACE@example.com")
    with pytest.raises(InvalidRecord, match="Invalid email"):
        lib.add_user("Nobody", "not-an-email")
    with pytest.raises(InvalidRecord, match="Unknown role"):
        lib.add_user("Nobody", "nobody@example.com", role="Janitor")


def test_users_listed_newest_first(lib):
    lib.add_user("First", "first@example.com")
    lib.add_user("Second", "second@example.com")
    assert [u.name for u in lib.list_users()] == ["Second", "First"]


def test_set_role_and_update_user(lib, student):
    assert lib.set_role(student.id, "Admin").role is Role.ADMIN
    updated = lib.update_user(student.id, name="Ada L.", email="ada.l@example.com")
    assert lib.get_user(student.id) == updated

    other = lib.add_user("Bob", "bob@example.com")
    with pytest.raises(DuplicateRecord):
        lib.update_user(other.id, email="ada.l@example.com")
    with pytest.raises(NotFound):
        lib.set_role(999, "Student")


def test_passwords_are_hashed(lib, student):
    stored = lib.db.read(
        lambda conn: conn.execute("SELECT password_hash FROM users WHERE id = ?", (student.id,)).fetchone()[0]
    )
    assert stored and "secret" not in stored
    assert lib.db.read(lambda conn: Membership(conn).check_password(student.id, "secret"))
    assert not lib.db.read(lambda conn: Membership(conn).check_password(student.id, "wrong"))


def test_admin_is_seeded_once(db_file, clock):
    Library(db_file=db_file, clock=clock, seed_admin=True)
    lib = Library(db_file=db_file, clock=clock, seed_admin=True)
    admins = [u for u in lib.list_users() if u.role is Role.ADMIN]
    assert len(admins) == 1


def test_loan_listings(lib, clock, student):
    other = lib.add_user("Bob", "bob@example.com")
    late = lib.add_book("Late", "Author")
    early = lib.add_book("Early", "Author")

    first = lib.borrow(student.id, late.id)
    clock.advance(2)
    second = lib.borrow(other.id, early.id)

    assert [loan.id for loan in lib.list_open_loans()] == [first.id, second.id]
    assert [loan.id for loan in lib.list_loans()] == [second.id, first.id]
    assert lib.list_loans()[0].user_name == "Bob"
    assert lib.list_loans()[0].book_title == "Early"
    assert [loan.id for loan in lib.list_user_loans(student.id)] == [first.id]


def test_fines_listing_and_statistics(lib, clock, student):
    books = [lib.add_book(f"Book {i}", "Author") for i in range(3)]
    loans = [lib.borrow(student.id, b.id) for b in books]

    clock.advance(16)
    lib.return_loan(loans[0].id)  # fine 2
    lib.return_loan(loans[1].id)  # fine 2
    lib.settle_fine(loans[0].id)

    assert [loan.id for loan in lib.list_fines()] == [loans[1].id, loans[0].id]
    assert [loan.id for loan in lib.list_fines(unsettled_only=True)] == [loans[1].id]
    assert lib.get_statistics() == {
        "total_books": 3,
        "borrowed_books": 1,
        "total_users": 1,
        "unsettled_fines": 2.0,
    }


def test_default_settings_are_seeded(lib):
    assert lib.get_settings() == {"borrow_days": "14", "fine_per_day": "1", "max_borrow": "5"}
    policy = lib.get_policy()
    assert (policy.borrow_days, policy.max_borrow, policy.fine_per_day) == (14, 5, 1.0)


def test_unknown_setting_keys_are_stored(lib):
    lib.update_settings({"library_name": "Central"})
    assert lib.get_settings()["library_name"] == "Central"


def test_migrates_older_store(tmp_path, clock):
    db_file = str(tmp_path / "legacy.db")
    conn = sqlite3.connect(db_file)
    conn.executescript(
        """
        CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL,
                            role TEXT NOT NULL DEFAULT 'Student', email TEXT UNIQUE NOT NULL);
        CREATE TABLE books (id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT NOT NULL,
                            author TEXT NOT NULL, category TEXT, year INTEGER, status TEXT);
        CREATE TABLE transactions (id INTEGER PRIMARY KEY AUTOINCREMENT, user_id INTEGER, book_id INTEGER,
                                   borrow_date TEXT, due_date TEXT, return_date TEXT,
                                   fine REAL, fine_settled INTEGER);
        INSERT INTO users (name, role, email) VALUES ('Old Reader', 'Student', 'old@example.com');
        INSERT INTO books (title, author, status) VALUES ('Old Book', 'Old Author', 'borrowed');
        INSERT INTO books (title, author, status) VALUES ('Shelf Book', 'Old Author', 'available');
        INSERT INTO transactions (user_id, book_id, borrow_date, due_date)
            VALUES (1, 1, '2024-02-01', '2024-02-15');
        """
    )
    conn.commit()
    conn.close()

    lib = Library(db_file=db_file, clock=clock, seed_admin=False)
    assert [b.status for b in lib.list_books()] == [BookStatus.BORROWED, BookStatus.AVAILABLE]

    (loan,) = lib.list_open_loans()
    assert loan.book_title == "Old Book"
    returned = lib.return_loan(loan.id)
    assert returned.fine == 15.0  # 2024-02-15 -> 2024-03-01
    assert lib.get_book(1).status is BookStatus.AVAILABLE


def test_search_treats_wildcards_literally(lib):
    lib.add_book("100% Pure", "Ann Author")
    lib.add_book("Dune", "Frank Herbert")
    lib.add_book("snake_case Style", "Guido")

    assert lib.search_books("_") == [lib.search_books("snake")[0]]
    assert [b.title for b in lib.search_books("%")] == ["100% Pure"]
    assert [b.title for b in lib.search_books("0% p")] == ["100% Pure"]
    assert lib.search_books("d_ne") == []


# Layout written by the first desktop release of the application
ORIGINAL_SCHEMA = """
    PRAGMA foreign_keys = ON;
    CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL, role TEXT NOT NULL,
                        email TEXT UNIQUE NOT NULL, password TEXT NOT NULL);
    CREATE TABLE books (id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT NOT NULL, author TEXT NOT NULL,
                        category TEXT, year INTEGER, status TEXT DEFAULT 'available');
    CREATE TABLE transactions (id INTEGER PRIMARY KEY AUTOINCREMENT, user_id INTEGER NOT NULL,
                               book_id INTEGER NOT NULL, borrow_date TEXT, due_date TEXT, return_date TEXT,
                               fine REAL DEFAULT 0, fine_settled INTEGER DEFAULT 0,
                               FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
                               FOREIGN KEY(book_id) REFERENCES books(id) ON DELETE CASCADE);
    CREATE TABLE reservations (id INTEGER PRIMARY KEY AUTOINCREMENT, user_id INTEGER NOT NULL,
                               book_id INTEGER NOT NULL, reservation_date TEXT, status TEXT DEFAULT 'pending',
                               FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
                               FOREIGN KEY(book_id) REFERENCES books(id) ON DELETE CASCADE);
    CREATE TABLE settings (key TEXT PRIMARY KEY, value TEXT NOT NULL);
    INSERT OR IGNORE INTO settings(key, value) VALUES ('borrow_days', '14'), ('max_borrow', '5'), ('fine_per_day', '1');
    INSERT OR IGNORE INTO users(id, name, role, email, password) VALUES (1, 'Admin', 'Admin', 'admin@lib.local', 'admin');
"""


def _original_store(path, extra_sql=""):
    conn = sqlite3.connect(path)
    conn.executescript(ORIGINAL_SCHEMA + extra_sql)
    conn.commit()
    conn.close()
    return path


def test_original_store_passwords_are_hashed(tmp_path, clock):
    db_file = _original_store(
        str(tmp_path / "original.db"),
        """
        INSERT INTO users (name, role, email, password) VALUES ('Sam', 'Student', 'sam@example.com', 'hunter2');
        INSERT INTO books (title, author) VALUES ('Old Book', 'Old Author');
        INSERT INTO reservations (user_id, book_id, reservation_date) VALUES (2, 1, '2024-02-01');
        """,
    )

    lib = Library(db_file=db_file, clock=clock, seed_admin=False)

    columns = lib.db.read(lambda conn: [row[1] for row in conn.execute("PRAGMA table_info(users)").fetchall()])
    assert "password" not in columns
    stored = lib.db.read(lambda conn: [row[0] for row in conn.execute("SELECT password_hash FROM users")])
    assert "admin" not in stored and "hunter2" not in stored
    assert lib.db.read(lambda conn: Membership(conn).check_password(1, "admin"))
    assert lib.db.read(lambda conn: Membership(conn).check_password(2, "hunter2"))

    # Rows referencing users survive the rebuild
    assert [r.user_name for r in lib.list_reservations()] == ["Sam"]

    added = lib.add_user("New", "new@example.com", "pw")
    assert added.id == 3
    assert [u.email for u in lib.list_users()] == ["new@example.com", "sam@example.com", "admin@lib.local"]

    # Opening the store again is a no-op
    again = Library(db_file=db_file, clock=clock, seed_admin=True)
    assert len(again.list_users()) == 3


def test_original_store_open_loans_are_reconciled(tmp_path, clock):
    db_file = _original_store(
        str(tmp_path / "original.db"),
        """
        INSERT INTO books (title, author, status) VALUES ('Twice Lent', 'A', 'borrowed');
        INSERT INTO books (title, author, status) VALUES ('Stuck', 'B', 'borrowed');
        INSERT INTO books (title, author, status) VALUES ('Shelf', 'C', 'available');
        INSERT INTO transactions (user_id, book_id, borrow_date, due_date)
            VALUES (1, 1, '2024-02-01', '2024-02-15');
        INSERT INTO transactions (user_id, book_id, borrow_date, due_date)
            VALUES (1, 1, '2024-02-03', '2024-02-17');
        INSERT INTO transactions (user_id, book_id, borrow_date, due_date, return_date)
            VALUES (1, 2, '2024-01-01', '2024-01-15', '2024-01-10');
        """,
    )

    lib = Library(db_file=db_file, clock=clock, seed_admin=False)

    (open_loan,) = lib.list_open_loans()
    assert open_loan.id == 2
    assert open_loan.book_id == 1
    closed = lib.get_loan(1)
    assert closed.return_date == closed.borrow_date
    assert closed.fine == 0.0

    statuses = {b.title: b.status for b in lib.list_books()}
    assert statuses == {
        "Twice Lent": BookStatus.BORROWED,
        "Stuck": BookStatus.AVAILABLE,
        "Shelf": BookStatus.AVAILABLE,
    }

    assert lib.return_loan(open_loan.id).fine == 13.0  # 2024-02-17 -> 2024-03-01
    assert lib.get_book(1).status is BookStatus.AVAILABLE
