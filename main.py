import logging
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

import database
from config import settings
from library import Library
from seed import DEMO_PASSWORD, USERS, seed
from utils.ui_helpers import print_books, print_loans, print_stats_result, set_output_mode

logging.basicConfig(level=settings.log_level)

console = Console()

app = typer.Typer(help="Library management CLI")


def _library() -> Library:
    # Reuse whichever database file is currently configured (tests point it at a temp file).
    return Library(db_file=database.DATABASE_FILE)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the database schema if it does not exist."""
    lib = _library()
    print(f"Database initialized at {lib.db_file}")


@app.command("seed")
def cli_seed():
    """Wipe the database and load demo data."""
    counts = seed(_library())
    print(
        f"Seeded {counts['users']} users, {counts['authors']} authors, "
        f"{counts['books']} books and {counts['loans']} loan."
    )
    for name, email, role in USERS:
        print(f"  {role.title()}: {email} / {DEMO_PASSWORD}")


@app.command("books")
def cli_books(search: Optional[str] = typer.Option(None, "--search", "-s", help="Title or ISBN fragment")):
    """List books in the catalog."""
    page = _library().catalog.get_all_books(limit=settings.max_page_size, search=search)
    print_books(page.items)


@app.command("overdue")
def cli_overdue():
    """List active loans that are past their due date."""
    print_loans(_library().loans.get_overdue_loans(), empty_message="No overdue loans.")


@app.command("stats")
def cli_stats():
    """Show catalog and loan statistics."""
    lib = _library()
    stats = {}
    stats.update(lib.catalog.get_book_stats())
    stats.update(lib.catalog.get_author_stats())
    stats.update(lib.loans.get_loan_stats())
    print_stats_result(stats)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Run the REST API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not launch uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
