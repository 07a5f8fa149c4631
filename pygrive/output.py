"""Output formatting for the command line."""

import json
import sys
from typing import Any

from rich.console import Console
from rich.markup import escape


class OutputFormatter:
    """Writes user-facing messages, honouring quiet and JSON modes.

    Informational messages go to stdout; warnings and errors go to stderr
    so they stay visible when stdout is redirected.
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        """Initialize output formatter.

        Args:
            json_output: Emit machine-readable JSON instead of text
            quiet: Suppress non-essential output
        """
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console(highlight=False)
        self.error_console = Console(stderr=True, highlight=False)

    def print(self, message: str = "") -> None:
        if self.quiet or self.json_output:
            return
        self.console.print(message, markup=False)

    def info(self, message: str) -> None:
        if self.quiet or self.json_output:
            return
        self.console.print(message, markup=False)

    def success(self, message: str) -> None:
        if self.quiet or self.json_output:
            return
        self.console.print(f"[green]{escape(message)}[/green]")

    def warning(self, message: str) -> None:
        if self.json_output:
            return
        self.error_console.print(f"[yellow]{escape(message)}[/yellow]")

    def error(self, message: str) -> None:
        self.error_console.print(f"[red]Error:[/red] {escape(message)}")

    def output_json(self, data: Any) -> None:
        """Write data as JSON to stdout (always, even in quiet mode)."""
        sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")
        sys.stdout.flush()
