import logging
import os
from functools import wraps
from typing import Dict, List, Optional

import typer

from .config import settings
from .errors import CirculationError
from .library import Library
from .models import BookStatus
from .ui_helpers import print_error, print_record, print_rows, set_output_mode

APP_NAME = "Library Circulation CLI"

app = typer.Typer(help=APP_NAME)

_state: Dict[str, Optional[str]] = {"db_file": None}

BOOK_COLUMNS = [("id", "ID"), ("title", "Title"), ("author", "Author"), ("category", "Category"),
                ("year", "Year"), ("status", "Status")]
USER_COLUMNS = [("id", "ID"), ("name", "Name"), ("email", "Email"), ("role", "Role")]
LOAN_COLUMNS = [("id", "ID"), ("user_name", "User"), ("book_title", "Book"), ("borrow_date", "Borrowed"),
                ("due_date", "Due"), ("return_date", "Returned"), ("fine", "Fine"), ("fine_settled", "Settled")]
RESERVATION_COLUMNS = [("id", "ID"), ("user_name", "User"), ("book_title", "Book"),
                       ("reservation_date", "Date"), ("status", "Status")]


def get_library() -> Library:
    return Library(db_file=_state["db_file"])


def handle_errors(func):
    """Print circulation errors as ``Error [kind]: message`` and exit with 1."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CirculationError as e:
            print_error(e.kind, e.message)
            raise typer.Exit(code=1)

    return wrapper


@app.callback()
def _global_options(
    db: Optional[str] = typer.Option(None, "--db", help="SQLite store file (default: LIBRARY_DB_FILE or library.db)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output format: plain | json | rich"),
):
    """Circulation desk operations over a local store."""
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    _state["db_file"] = db
    if output:
        set_output_mode(output)


# ------------------------- Books ------------------------- #
@app.command("books")
@handle_errors
def cli_books(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Match title, author or category"),
    available: bool = typer.Option(False, "--available", help="Only books on the shelf"),
):
    """List or search the catalog, ordered by title."""
    lib = get_library()
    if query:
        books = lib.search_books(query)
        if available:
            books = [b for b in books if b.is_available]
    else:
        books = lib.list_books(BookStatus.AVAILABLE if available else None)
    print_rows([b.to_dict() for b in books], BOOK_COLUMNS, "Catalog", "No books found.")


@app.command("add-book")
@handle_errors
def cli_add_book(
    title: str,
    author: str,
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    year: Optional[int] = typer.Option(None, "--year", "-y"),
):
    """Add a book to the catalog."""
    book = get_library().add_book(title, author, category, year)
    print_record(book.to_dict(), f"Added book {book.id}")


@app.command("update-book")
@handle_errors
def cli_update_book(
    book_id: int,
    title: Optional[str] = typer.Option(None, "--title"),
    author: Optional[str] = typer.Option(None, "--author"),
    category: Optional[str] = typer.Option(None, "--category"),
    year: Optional[int] = typer.Option(None, "--year"),
):
    """Edit a book's descriptive fields."""
    book = get_library().update_book(book_id, title=title, author=author, category=category, year=year)
    print_record(book.to_dict(), f"Updated book {book.id}")


@app.command("remove-book")
@handle_errors
def cli_remove_book(book_id: int):
    """Remove a book together with its loans and reservations."""
    if get_library().remove_book(book_id):
        print(f"Book {book_id} has been removed.")
    else:
        print_error("NotFound", f"Book {book_id} not found.")
        raise typer.Exit(code=1)


# ------------------------- Users ------------------------- #
@app.command("users")
@handle_errors
def cli_users():
    """List users, newest first."""
    users = get_library().list_users()
    print_rows([u.to_dict() for u in users], USER_COLUMNS, "Users", "No users.")


@app.command("add-user")
@handle_errors
def cli_add_user(
    name: str,
    email: str,
    role: str = typer.Option("Student", "--role", "-r", help="Student | Librarian | Admin"),
    password: str = typer.Option("", "--password", "-p"),
):
    """Register a user."""
    user = get_library().add_user(name, email, password, role)
    print_record(user.to_dict(), f"Added user {user.id}")


@app.command("set-role")
@handle_errors
def cli_set_role(user_id: int, role: str):
    """Change a user's role label."""
    user = get_library().set_role(user_id, role)
    print(f"User {user.id} is now {user.role.value}.")


@app.command("remove-user")
@handle_errors
def cli_remove_user(user_id: int):
    """Remove a user; books they hold go back on the shelf."""
    get_library().remove_user(user_id)
    print(f"User {user_id} has been removed.")


# ------------------------- Circulation ------------------------- #
@app.command("borrow")
@handle_errors
def cli_borrow(user_id: int, book_id: int):
    """Lend a book to a user."""
    loan = get_library().borrow(user_id, book_id)
    print(f"Loan {loan.id} created. Due: {loan.due_date.isoformat()}")


@app.command("return")
@handle_errors
def cli_return(loan_id: int):
    """Close a loan and compute its fine."""
    loan = get_library().return_loan(loan_id)
    print(f"Loan {loan.id} returned. Fine: {loan.fine:.2f}")


@app.command("reserve")
@handle_errors
def cli_reserve(user_id: int, book_id: int):
    """Queue a reservation for a book."""
    reservation = get_library().reserve(user_id, book_id)
    print(f"Reservation {reservation.id} created ({reservation.status.value}).")


@app.command("resolve")
@handle_errors
def cli_resolve(reservation_id: int, outcome: str = typer.Argument(..., help="completed | canceled")):
    """Mark a pending reservation as completed or canceled."""
    reservation = get_library().resolve_reservation(reservation_id, outcome)
    print(f"Reservation {reservation.id} is now {reservation.status.value}.")


@app.command("settle")
@handle_errors
def cli_settle(loan_id: int):
    """Mark a loan's fine as paid."""
    loan = get_library().settle_fine(loan_id)
    print(f"Fine of {loan.fine:.2f} on loan {loan.id} is settled.")


@app.command("loans")
@handle_errors
def cli_loans(
    open_only: bool = typer.Option(False, "--open", help="Only open loans, soonest due first"),
    user_id: Optional[int] = typer.Option(None, "--user", "-u", help="Only loans of this user"),
):
    """List loans (newest first unless --open)."""
    lib = get_library()
    if user_id is not None:
        loans = lib.list_user_loans(user_id)
        if open_only:
            loans = [loan for loan in loans if loan.is_open]
    elif open_only:
        loans = lib.list_open_loans()
    else:
        loans = lib.list_loans()
    print_rows([loan.to_dict() for loan in loans], LOAN_COLUMNS, "Loans", "No loans.")


@app.command("fines")
@handle_errors
def cli_fines(unsettled: bool = typer.Option(False, "--unsettled", help="Hide settled fines")):
    """List returned loans that carry a fine."""
    loans = get_library().list_fines(unsettled_only=unsettled)
    print_rows([loan.to_dict() for loan in loans], LOAN_COLUMNS, "Fines", "No fines.")


@app.command("reservations")
@handle_errors
def cli_reservations(
    book_id: Optional[int] = typer.Option(None, "--book", "-b", help="Only pending reservations of this book"),
):
    """List reservations, newest first (or a book's pending queue, oldest first)."""
    lib = get_library()
    reservations = lib.list_book_reservations(book_id) if book_id is not None else lib.list_reservations()
    print_rows([r.to_dict() for r in reservations], RESERVATION_COLUMNS, "Reservations", "No reservations.")


# ------------------------- Settings & reports ------------------------- #
@app.command("settings")
@handle_errors
def cli_settings():
    """Show the stored circulation settings."""
    print_record(get_library().get_settings(), "Settings")


@app.command("set-settings")
@handle_errors
def cli_set_settings(pairs: List[str] = typer.Argument(..., help="KEY=VALUE pairs, applied all or nothing")):
    """Update several settings at once."""
    updates: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            print_error("InvalidSetting", f"Expected KEY=VALUE, got {pair!r}")
            raise typer.Exit(code=1)
        updates[key.strip()] = value
    policy = get_library().update_settings(updates)
    print_record(policy.to_dict(), "Settings updated")


@app.command("stats")
@handle_errors
def cli_stats():
    """Show circulation statistics."""
    stats = get_library().get_statistics()
    print_record(
        {
            "Total books": stats["total_books"],
            "Borrowed now": stats["borrowed_books"],
            "Total users": stats["total_users"],
            "Unsettled fines": stats["unsettled_fines"],
        },
        "Statistics",
    )


@app.command("backup")
@handle_errors
def cli_backup(destination: Optional[str] = typer.Argument(None, help="Target file (default: <store>_backup.db)")):
    """Copy the store to a backup file."""
    target = get_library().backup(destination)
    print(f"Backup created: {target}")


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
):
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    if _state["db_file"]:
        # The API resolves its store from the environment
        os.environ["LIBRARY_DB_FILE"] = _state["db_file"]
    print(f"Starting API on http://{host}:{port}/")
    uvicorn.run("circulation.api:app", host=host, port=port, log_level=settings.log_level.lower())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
