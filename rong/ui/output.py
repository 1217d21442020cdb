"""
UI output management with color-coded terminal output.
"""

import sys
from typing import Optional, TextIO

from rong.daemon.protocol import ENCODING, ERRORS

TEXT_COLOR_MAPPING = {
    "blue": "36;1",
    "yellow": "33;1",
    "green": "32;1",
    "red": "31;1",
    "gray": "90",
}


def get_colored_text(text: str, color: str) -> str:
    """
    Get colored text.

    Raises:
        ValueError: If the specified color is not supported
    """
    if color not in TEXT_COLOR_MAPPING:
        raise ValueError(
            f"Unsupported color: {color}. Available colors: {', '.join(TEXT_COLOR_MAPPING.keys())}"
        )
    return f"\u001b[{TEXT_COLOR_MAPPING[color]}m{text}\u001b[0m"


def format_error(message: str, command: Optional[str] = None) -> str:
    """
    Turn a server error message into the line shown to the user.

    A trailing ``.`` marks messages that ``help`` can expand on; it is
    replaced by a pointer to the relevant help page.
    """
    if not message.endswith("."):
        return message
    hint = f"rong help {command}" if command else "rong help"
    return f"{message[:-1]} (try '{hint}')"


def write_verbatim(text: str, stream: Optional[TextIO] = None) -> None:
    """
    Write text exactly, bytes included.

    Buffer contents may carry undecodable bytes (kept as surrogates), so
    they go to the underlying binary stream when there is one.
    """
    stream = stream or sys.stdout
    binary = getattr(stream, "buffer", None)
    if binary is None:
        stream.write(text)
        stream.flush()
        return
    stream.flush()
    binary.write(text.encode(ENCODING, ERRORS))
    binary.flush()


class UIManager:
    """Colored terminal output for rong. Diagnostics go to stderr."""

    def __init__(self, color: Optional[bool] = None):
        """
        Args:
            color: Force colors on or off; by default only when stderr is a tty
        """
        self.color = sys.stderr.isatty() if color is None else color

    def error(self, message: str) -> None:
        """Print error message in red."""
        self._print_colored(f"rong: {message}", "red", file=sys.stderr)

    def warning(self, message: str) -> None:
        """Print warning message in yellow."""
        self._print_colored(f"rong: {message}", "yellow", file=sys.stderr)

    def success(self, message: str) -> None:
        self._print_colored(message, "green")

    def info(self, message: str) -> None:
        self._print_colored(message, "blue")

    def _print_colored(
        self,
        text: str,
        color: str,
        end: str = "\n",
        file: Optional[TextIO] = None,
    ) -> None:
        if self.color:
            text = get_colored_text(text, color)
        print(text, end=end, file=file)
        if file:
            file.flush()
