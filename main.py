import logging
import subprocess
import sys
import webbrowser
from datetime import timedelta
from typing import List, Optional

import typer

import library_app.database as database
from config import settings
from library_app.book import Book
from library_app.errors import LibraryError
from library_app.library import Library
from library_app.member import Member
from library_app.seed import seed_demo_data
from library_app.ui_helpers import (
    print_books,
    print_borrowings,
    print_members,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Library CLI"

logger = logging.getLogger(__name__)


class LibraryManager:
    """Holds the CLI's Library instance, rebuilt when the database file changes."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = database.DATABASE_FILE
        if cls._instance is None or cls._db_file_snapshot != current_db:
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Global options for the CLI (output mode, verbosity)."""
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level)
    if output:
        set_output_mode(output)


def _fail(e: LibraryError) -> None:
    print(f"Error: {e}")
    raise typer.Exit(code=1)


@app.command("init-db")
def cli_init_db():
    """Create the database tables if needed."""
    lib = LibraryManager.get_instance()
    print(f"Database ready at {lib.db_file}")


@app.command("seed")
def cli_seed():
    """Load the demo catalogue, members and borrowings into an empty database."""
    counts = seed_demo_data(LibraryManager.get_instance())
    if counts["books"]:
        print(f"Seeded {counts['books']} books, {counts['members']} members and {counts['borrowings']} borrowings.")
    else:
        print("Database already contains books; nothing seeded.")


@app.command("books")
def cli_books(q: Optional[str] = typer.Option(None, "--search", "-s", help="Search in title and author"),
              category: Optional[str] = typer.Option(None, "--category", "-c"),
              available: bool = typer.Option(False, "--available", help="Only books with stock left")):
    """List books."""
    try:
        print_books(LibraryManager.get_instance().list_books(q=q, category=category, available=available))
    except LibraryError as e:
        _fail(e)


@app.command("add-book")
def cli_add_book(title: str, author: str, category: str, stock: int = typer.Option(1, "--stock", help="Copies available")):
    """Add a book title."""
    try:
        book = LibraryManager.get_instance().add_book(Book(title, author, category, stock))
    except LibraryError as e:
        _fail(e)
    print(f"Added book #{book.id}: {book.title} by {book.author} (stock {book.stock})")


@app.command("members")
def cli_members(q: Optional[str] = typer.Option(None, "--search", "-s", help="Search in name, email and code")):
    """List members."""
    print_members(LibraryManager.get_instance().list_members(q=q))


@app.command("add-member")
def cli_add_member(name: str, email: str):
    """Register a member."""
    try:
        member = LibraryManager.get_instance().add_member(Member(name, email))
    except LibraryError as e:
        _fail(e)
    print(f"Registered {member.member_code}: {member.name} <{member.email}>")


@app.command("borrowings")
def cli_borrowings(status: Optional[str] = typer.Option(None, "--status", help="borrowed | returned | overdue"),
                   member_id: Optional[int] = typer.Option(None, "--member")):
    """List borrowings with their current status."""
    try:
        print_borrowings(LibraryManager.get_instance().list_borrowings(status=status, member_id=member_id))
    except LibraryError as e:
        _fail(e)


@app.command("borrow")
def cli_borrow(member_id: int, book_ids: List[int],
               days: int = typer.Option(settings.default_loan_days, "--days", help="Loan period in days")):
    """Lend one copy of each book to a member."""
    lib = LibraryManager.get_instance()
    now = lib.now()
    try:
        borrowing = lib.borrow(member_id, book_ids, borrow_date=now, due_date=now + timedelta(days=days))
    except LibraryError as e:
        _fail(e)
    print(f"Borrowing #{borrowing.id} created, due {borrowing.due_date.date().isoformat()}.")


@app.command("return")
def cli_return(borrowing_id: int):
    """Return every book of a borrowing."""
    try:
        borrowing = LibraryManager.get_instance().return_borrowing(borrowing_id)
    except LibraryError as e:
        _fail(e)
    message = f"Borrowing #{borrowing.id} returned."
    if borrowing.days_overdue:
        message += f" It was {borrowing.days_overdue} day(s) late."
    print(message)


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("serve")
def cli_serve(no_browser: bool = typer.Option(False, "--no-browser", help="Do not open a browser tab")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    if not no_browser:
        try:
            webbrowser.open(url)
        except Exception:
            logger.debug("Could not open a browser", exc_info=True)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    subprocess.run(args)


if __name__ == "__main__":
    app()
