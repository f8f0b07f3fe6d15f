import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _author_names(book: Any) -> str:
    return ", ".join(a["name"] for a in getattr(book, "authors", []) or [])


def print_books(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'ISBN - Title by Authors (n available)' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Authors", style="white")
        table.add_column("Year", justify="right")
        table.add_column("Available", justify="right", style="green")
        for b in books:
            table.add_row(b.isbn, b.title, _author_names(b), str(b.published_year), str(b.available_copies))
        _console.print(table)
    else:
        for b in books:
            print(f"{b.isbn} - {b.title} by {_author_names(b)} ({b.available_copies} available)")


def print_loans(loans: List[Any], empty_message: str = "No loans found.") -> None:
    """Print loans with borrower and due date."""
    mode = get_output_mode()

    if not loans:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("Book", style="white")
        table.add_column("Borrower", style="white")
        table.add_column("Due", style="yellow", no_wrap=True)
        table.add_column("Status")
        for loan in loans:
            status = "[red]OVERDUE[/]" if loan.is_overdue() else loan.status
            table.add_row((loan.book or {}).get("title", loan.book_id),
                          (loan.user or {}).get("name", loan.user_id), loan.due_at, status)
        _console.print(table)
    else:
        for loan in loans:
            title = (loan.book or {}).get("title", loan.book_id)
            name = (loan.user or {}).get("name", loan.user_id)
            print(f"{title} - {name} (due {loan.due_at})")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print library statistics.
    - plain: one 'Label: value' line per metric
    - json: JSON object
    - rich: Panel with the main metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "totalBooks": "Total Books",
        "availableBooks": "Available Books",
        "totalAuthors": "Total Authors",
        "totalLoans": "Total Loans",
        "activeLoans": "Active Loans",
        "overdueLoans": "Overdue Loans",
    }

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")
