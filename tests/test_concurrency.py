import sqlite3
import threading

import pytest

from circulation import (
    AlreadyReturned,
    BookStatus,
    CirculationError,
    LimitExceeded,
    NotAvailable,
    StoreConflict,
    StoreUnavailable,
)
from circulation.database import Database


def _run_together(count, target):
    """Start ``count`` threads at the same instant and collect what each returned or raised."""
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(index):
        barrier.wait()
        try:
            results[index] = target(index)
        except CirculationError as e:
            results[index] = e

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results


def test_concurrent_borrows_of_one_book(lib, book):
    users = [lib.add_user(f"Reader {i}", f"reader{i}@example.com") for i in range(8)]

    results = _run_together(len(users), lambda i: lib.borrow(users[i].id, book.id))

    winners = [r for r in results if not isinstance(r, CirculationError)]
    losers = [r for r in results if isinstance(r, CirculationError)]
    assert len(winners) == 1
    assert all(isinstance(e, NotAvailable) for e in losers)
    assert len(lib.list_open_loans()) == 1
    assert lib.get_book(book.id).status is BookStatus.BORROWED


def test_concurrent_borrows_respect_limit(lib, student):
    lib.update_settings({"max_borrow": "2"})
    books = [lib.add_book(f"Book {i}", "Author") for i in range(6)]

    results = _run_together(len(books), lambda i: lib.borrow(student.id, books[i].id))

    assert sum(1 for r in results if not isinstance(r, CirculationError)) == 2
    assert all(isinstance(r, LimitExceeded) for r in results if isinstance(r, CirculationError))
    assert len(lib.list_user_loans(student.id)) == 2
    assert len(lib.list_books(BookStatus.BORROWED)) == 2


def test_concurrent_returns_of_one_loan(lib, clock, student, book):
    loan = lib.borrow(student.id, book.id)
    clock.advance(20)

    results = _run_together(4, lambda i: lib.return_loan(loan.id))

    returned = [r for r in results if not isinstance(r, CirculationError)]
    assert len(returned) == 1
    assert all(isinstance(r, AlreadyReturned) for r in results if isinstance(r, CirculationError))
    assert lib.get_loan(loan.id).fine == 6.0
    assert lib.get_book(book.id).status is BookStatus.AVAILABLE


def test_held_write_lock_ends_in_store_conflict(lib, db_file):
    holder = sqlite3.connect(db_file, isolation_level=None)
    holder.execute("BEGIN IMMEDIATE")
    try:
        db = Database(db_file, busy_timeout=0.05, attempts=2, backoff=0.01)
        with pytest.raises(StoreConflict, match="after 2 attempts"):
            db.run(lambda conn: conn.execute("UPDATE settings SET value = '3' WHERE key = 'max_borrow'"))
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    assert lib.get_settings()["max_borrow"] == "5"


def test_other_store_errors_are_unavailable(lib, db_file, tmp_path):
    db = Database(db_file, attempts=3)
    with pytest.raises(StoreUnavailable):
        db.run(lambda conn: conn.execute("SELECT * FROM no_such_table"))

    with pytest.raises(StoreUnavailable):
        Database(str(tmp_path / "missing" / "library.db")).run(lambda conn: None)
