import json
import os
from typing import Any, Dict, List, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_rows(title: str, columns: Sequence[str], rows: List[Dict[str, Any]], empty_message: str) -> None:
    """Print dict rows as plain lines, a JSON array or a rich table.

    - plain: one line per row, 'col=value' pairs separated by two spaces
    - json: the rows as a JSON array
    - rich: a table with one column per key in ``columns``
    """
    mode = get_output_mode()

    if not rows:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([{c: row.get(c) for c in columns} for row in rows], ensure_ascii=False, default=str))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for column in columns:
            table.add_column(column.replace("_", " ").title())
        for row in rows:
            table.add_row(*["" if row.get(c) is None else str(row.get(c)) for c in columns])
        _console.print(table)
    else:
        for row in rows:
            print("  ".join(f"{c}={row.get(c)}" for c in columns))


def print_stats_result(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = [
        ("Total Books", stats.get("total_books", 0)),
        ("Total Users", stats.get("total_users", 0)),
        ("Active Borrows", stats.get("active_borrows", 0)),
        ("Overdue Books", stats.get("overdue_books", 0)),
    ]

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in labels)
        _console.print(Panel.fit(content, title=f"Stats for {stats.get('day')}", border_style="blue"))
    else:
        print(f"Date: {stats.get('day')}")
        for label, value in labels:
            print(f"{label}: {value}")
