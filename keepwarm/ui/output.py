"""
Status and error messages for the terminal.

Messages go to stderr so they never mix with the child output relayed
on stdout.
"""

from typing import Optional

from rich.console import Console

# Style per message kind
MESSAGE_STYLES = {
    "error": "bold red",
    "warning": "bold yellow",
    "info": "bold cyan",
    "dim": "bright_black",
}


class UIManager:
    """Manages colored status output for keepwarm."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True, highlight=False)

    def error(self, message: str) -> None:
        self._print_styled(message, "error")

    def warning(self, message: str) -> None:
        self._print_styled(message, "warning")

    def info(self, message: str) -> None:
        self._print_styled(message, "info")

    def dim(self, text: str) -> None:
        self._print_styled(text, "dim")

    def _print_styled(self, text: str, kind: str) -> None:
        """
        Print text with the style registered for ``kind``.

        Markup in ``text`` is not interpreted; command lines often contain
        square brackets.
        """
        self.console.print(text, style=MESSAGE_STYLES.get(kind), markup=False)
