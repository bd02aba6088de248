"""Output formatting for the command line."""

import json
import sys
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from .utils import format_size


class OutputFormatter:
    """Prints messages, tables and summaries as rich text or JSON.

    Status messages go to stderr so that stdout carries only data
    (tables or JSON documents).
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console()
        self.err_console = Console(stderr=True)

    def print(self, message: str) -> None:
        if not self.json_output:
            self.console.print(message)

    def info(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.err_console.print(message)

    def success(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.err_console.print(f"[green]✓[/green] {message}")

    def warning(self, message: str) -> None:
        if not self.json_output:
            self.err_console.print(f"[yellow]Warning:[/yellow] {message}")

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {message}")

    def progress_message(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.err_console.print(f"[dim]{message}[/dim]")

    def output_json(self, data: Any) -> None:
        sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")

    def output_table(
        self,
        rows: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Print rows as a table, or as a JSON list in JSON mode.

        Args:
            rows: One dictionary per row
            columns: Keys to show, in order
            headers: Column titles (key names if omitted)
        """
        if self.json_output:
            self.output_json([{c: row.get(c) for c in columns} for row in rows])
            return
        headers = headers or {}
        table = Table(show_header=True, header_style="bold")
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in rows:
            table.add_row(*("" if row.get(c) is None else str(row[c]) for c in columns))
        self.console.print(table)

    def print_summary(self, title: str, items: list[tuple[str, Any]]) -> None:
        """Print a titled list of label/value pairs."""
        if self.json_output:
            self.output_json({label: value for label, value in items})
            return
        if self.quiet:
            return
        self.console.print(f"\n[bold]{title}[/bold]")
        for label, value in items:
            self.console.print(f"  {label}: {value}")

    @staticmethod
    def format_size(size_bytes: int) -> str:
        return format_size(size_bytes)
