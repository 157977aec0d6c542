from datetime import date, timedelta

import pytest

from circulation.library import Library


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, today: date) -> None:
        self.today = today

    def __call__(self) -> date:
        return self.today

    def advance(self, days: int) -> date:
        self.today = self.today + timedelta(days=days)
        return self.today


@pytest.fixture
def clock():
    return FakeClock(date(2024, 3, 1))


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file, clock):
    lib = Library(db_file=db_file, clock=clock, seed_admin=False)
    yield lib
    lib.close()


@pytest.fixture
def student(lib):
    return lib.add_user("Ada Student", "ada@example.com", "secret")


@pytest.fixture
def book(lib):
    return lib.add_book("Dune", "Frank Herbert", "Science Fiction", 1965)
