"""Command-line administration for the library backend."""

import os
import subprocess
import sys
from typing import NoReturn, Optional

import typer

from .config import Settings, configure_logging
from .errors import LibraryError
from .library import Library
from .ui_helpers import print_rows, print_stats_result, set_output_mode

app = typer.Typer(help="Library management CLI")

REPORT_KINDS = ("most-borrowed", "active-users")


def _fail(error: LibraryError) -> NoReturn:
    print(f"Error: {error.message}")
    raise typer.Exit(code=1)


def _library(ctx: typer.Context) -> Library:
    """Build a Library for this invocation and make sure the schema exists."""
    settings: Settings = ctx.obj["settings"]
    library = Library(settings)
    try:
        library.initialize()
    except LibraryError as e:
        _fail(e)
    return library


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    database: Optional[str] = typer.Option(
        None,
        "--database",
        "-d",
        help="SQLite file to use instead of DATABASE_FILE",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to stderr"),
):
    """Global options (output mode, database file)."""
    if output:
        set_output_mode(output)
    settings = Settings.from_env()
    if database:
        settings.database_file = database
    if verbose:
        configure_logging(settings)
    ctx.obj = {"settings": settings}


@app.command("init-db")
def cli_init_db(ctx: typer.Context):
    """Create the database tables if they do not exist."""
    library = _library(ctx)
    print(f"Database initialized at {library.settings.database_file}")


@app.command("create-user")
def cli_create_user(
    ctx: typer.Context,
    full_name: str,
    email: str,
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    role: str = typer.Option("student", "--role", "-r", help="student | librarian | admin"),
):
    """Register a user, typically to bootstrap the first admin account."""
    library = _library(ctx)
    try:
        user = library.identity.register(full_name, email, password, role)
    except LibraryError as e:
        _fail(e)
    print(f"Created user {user.id}: {user.full_name} <{user.email}> ({user.role.value})")


@app.command("books")
def cli_books(ctx: typer.Context):
    """List all books."""
    library = _library(ctx)
    try:
        rows = [book.to_dict() for book in library.catalog.list_books()]
    except LibraryError as e:
        _fail(e)
    print_rows("Books", ["id", "title", "author", "copies_available"], rows, "No books in library.")


@app.command("overdue")
def cli_overdue(ctx: typer.Context):
    """Show unreturned books past their due date, with fines."""
    library = _library(ctx)
    try:
        rows = [entry.to_dict() for entry in library.reports.overdue()]
    except LibraryError as e:
        _fail(e)
    print_rows(
        "Overdue Books",
        ["record_id", "user_name", "title", "due_date", "overdue_days", "fine"],
        rows,
        "No overdue books.",
    )


@app.command("report")
def cli_report(
    ctx: typer.Context,
    kind: str = typer.Argument(..., help="most-borrowed | active-users"),
    limit: int = typer.Option(10, "--limit", "-n", min=1, max=100),
):
    """Show the most borrowed books or the most active borrowers."""
    if kind not in REPORT_KINDS:
        print(f"Unknown report: {kind}. Use one of: {', '.join(REPORT_KINDS)}")
        raise typer.Exit(code=2)
    library = _library(ctx)
    try:
        if kind == "most-borrowed":
            title, columns = "Most Borrowed", ["book_id", "title", "borrow_count"]
            rows = [
                {"book_id": r.id, "title": r.name, "borrow_count": r.borrow_count}
                for r in library.reports.most_borrowed(limit)
            ]
        else:
            title, columns = "Most Active Borrowers", ["user_id", "user_name", "borrow_count"]
            rows = [
                {"user_id": r.id, "user_name": r.name, "borrow_count": r.borrow_count}
                for r in library.reports.most_active_borrowers(limit)
            ]
    except LibraryError as e:
        _fail(e)
    print_rows(title, columns, rows, "No borrow records.")


@app.command("stats")
def cli_stats(
    ctx: typer.Context,
    recompute: bool = typer.Option(False, "--recompute", help="Save today's snapshot to the stats history"),
    previous: bool = typer.Option(False, "--previous", help="Show yesterday's saved snapshot instead"),
):
    """Show library statistics."""
    library = _library(ctx)
    try:
        if previous:
            snapshot = library.stats.previous_day()
        elif recompute:
            snapshot = library.stats.recompute()
        else:
            snapshot = library.stats.current()
    except LibraryError as e:
        _fail(e)
    print_stats_result(snapshot.to_dict())


@app.command("serve")
def cli_serve(
    ctx: typer.Context,
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    settings: Settings = ctx.obj["settings"]
    url = f"http://{settings.api_host}:{settings.api_port}/"
    print(f"Starting API on {url}")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "library_backend.api:app",
        "--host", settings.api_host,
        "--port", str(settings.api_port),
    ]
    if reload:
        args.append("--reload")
    env = {**os.environ, "DATABASE_FILE": settings.database_file}
    subprocess.run(args, env=env, check=False)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
