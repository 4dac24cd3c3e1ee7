import os
import json
from typing import Any, Dict, List, Sequence, Tuple
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable controlling CLI output mode.
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

STATUS_STYLES = {"borrowed": "yellow", "returned": "green", "overdue": "bold red"}


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_records(records: List[dict], empty_message: str, title: str,
                   columns: Sequence[Tuple[str, str]], plain_line) -> None:
    """Print records in the current output mode.
    - plain: one line per record built by ``plain_line``
    - json: JSON array of the record dicts
    - rich: Rich table with ``columns`` as (key, header) pairs
    """
    mode = get_output_mode()

    if not records:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps(records, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for key, header in columns:
            table.add_column(header, style="magenta" if key == "id" else "white", no_wrap=key == "id")
        for record in records:
            cells = []
            for key, _ in columns:
                value = record.get(key)
                if key == "status":
                    cells.append(f"[{STATUS_STYLES.get(value, 'white')}]{value}[/]")
                else:
                    cells.append("" if value is None else str(value))
            table.add_row(*cells)
        _console.print(table)
    else:
        for record in records:
            print(plain_line(record))


def print_books(books: List[Any]) -> None:
    _print_records(
        [b.to_dict() for b in books],
        "No books in library.",
        "📚 Books",
        [("id", "ID"), ("title", "Title"), ("author", "Author"), ("category", "Category"), ("stock", "Stock")],
        lambda b: f"{b['id']} - {b['title']} by {b['author']} [{b['category']}] stock: {b['stock']}",
    )


def print_members(members: List[Any]) -> None:
    _print_records(
        [m.to_dict() for m in members],
        "No members registered.",
        "👥 Members",
        [("id", "ID"), ("member_code", "Code"), ("name", "Name"), ("email", "Email")],
        lambda m: f"{m['member_code']} - {m['name']} <{m['email']}>",
    )


def print_borrowings(borrowings: List[Any]) -> None:
    def _line(b: dict) -> str:
        titles = ", ".join(book["title"] for book in b["books"])
        line = f"#{b['id']} {b['member_code']} {b['member_name']}: {titles} due {b['due_date'][:10]} [{b['status']}]"
        if b["days_overdue"]:
            line += f" ({b['days_overdue']} day(s) late)"
        return line

    records = []
    for b in borrowings:
        record = b.to_dict()
        record["titles"] = ", ".join(book["title"] for book in record["books"])
        records.append(record)
    _print_records(
        records,
        "No borrowings recorded.",
        "🔖 Borrowings",
        [("id", "ID"), ("member_name", "Member"), ("titles", "Books"), ("borrow_date", "Borrowed"),
         ("due_date", "Due"), ("return_date", "Returned"), ("status", "Status")],
        _line,
    )


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    by_status = stats.get("borrowings_by_status", {})
    lines = [
        ("Total Books", stats.get("total_books", 0)),
        ("Copies In Stock", stats.get("copies_in_stock", 0)),
        ("Total Members", stats.get("total_members", 0)),
        ("Total Borrowings", stats.get("total_borrowings", 0)),
        ("Borrowed", by_status.get("borrowed", 0)),
        ("Returned", by_status.get("returned", 0)),
        ("Overdue", by_status.get("overdue", 0)),
    ]

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in lines)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for label, value in lines:
            print(f"{label}: {value}")
