"""
Console output for unifi-lego.

Results and problems are written for the person running the command; the
log stream carries the step-by-step detail. Everything except regular
results goes to stderr so that the systemd journal keeps the two apart.
"""

from typing import Any

from rich.console import Console
from rich.table import Table
from rich.theme import Theme

UNIFI_LEGO_THEME = Theme(
    {
        "error": "bold red",
        "warning": "yellow",
        "note": "yellow",
        "success": "green",
        "processing": "blue",
        "key": "bold",
    }
)


class ConsoleManager:
    """Rich consoles for results (stdout) and diagnostics (stderr)."""

    def __init__(self) -> None:
        self.console = Console(theme=UNIFI_LEGO_THEME)
        self.error_console = Console(stderr=True, theme=UNIFI_LEGO_THEME)

    def print(self, message: str, markup: bool = True) -> None:
        self.console.print(message, markup=markup, highlight=False)

    def _diagnostic(self, label: str, style: str, message: str) -> None:
        self.error_console.print(f"[{style}]{label}:[/{style}] {message}")

    def print_error(self, message: str) -> None:
        self._diagnostic("Error", "error", message)

    def print_warning(self, message: str) -> None:
        self._diagnostic("Warning", "warning", message)

    def print_note(self, message: str) -> None:
        """Print a hint, usually what to try next after a failure."""
        self._diagnostic("Note", "note", message)

    def print_processing(self, message: str) -> None:
        """Announce a step that may take a while (lego waits on DNS)."""
        self.console.print(f"[processing]…[/processing] {message}")

    def print_success(self, message: str) -> None:
        self.console.print(f"[success]✓[/success] {message}")

    def print_config_table(self, config_data: dict[str, Any]) -> None:
        """Show the main settings of a freshly written configuration."""
        table = Table(title="unifi-lego configuration", title_justify="left")
        table.add_column("Setting", style="key")
        table.add_column("Value")
        for key, value in config_data.items():
            table.add_row(key, "" if value is None else str(value))
        self.console.print(table)


console_manager = ConsoleManager()
