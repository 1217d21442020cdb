"""
Interactive session against the rong daemon.

Lines typed at the prompt go to the server unchanged and responses are
printed exactly as they arrive, frame markers included.
"""

import sys

from prompt_toolkit import prompt
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.key_binding import KeyBindings
from rich.console import Console
from rich.panel import Panel

from rong.daemon.client import DaemonClient, DaemonError
from rong.daemon.protocol import ParseError, ProtocolError, parse_request
from rong.ui.output import UIManager, write_verbatim

PROMPT = "rong> "


class ReplPrompt:
    """Line input with history; falls back to plain reads when stdin is not a tty."""

    def __init__(self):
        self.history = InMemoryHistory()
        self.bindings = self._setup_key_bindings()
        self.interactive = sys.stdin.isatty()

    def _setup_key_bindings(self) -> KeyBindings:
        kb = KeyBindings()

        @kb.add('c-c')  # Ctrl+C
        def _(event):
            event.app.exit(exception=KeyboardInterrupt)

        return kb

    def get_input(self, message: str = PROMPT) -> str:
        """
        Read one line.

        Raises:
            EOFError: On Ctrl-D or end of piped input
            KeyboardInterrupt: On Ctrl-C
        """
        if not self.interactive:
            line = sys.stdin.readline()
            if not line:
                raise EOFError
            return line.rstrip("\n").strip()
        return prompt(message, history=self.history, key_bindings=self.bindings).strip()


def _is_exit(line: str) -> bool:
    try:
        name, _ = parse_request(line)
    except ParseError:
        return False
    return name == "exit"


def run_repl(client: DaemonClient, ui: UIManager) -> int:
    """
    Relay lines between the terminal and the server until exit or EOF.

    Returns:
        Exit status: 0 when the user leaves, 1 when the server goes away
    """
    reader = ReplPrompt()
    if reader.interactive:
        console = Console()
        console.print(
            Panel.fit(
                f"[bold]{client.greeting}[/bold]\n[dim]{client.socket_path}[/dim]",
                title="rong",
            )
        )
        console.print("Type 'help' for commands, 'exit' or Ctrl-D to leave.")

    while True:
        try:
            line = reader.get_input()
        except (EOFError, KeyboardInterrupt):
            if reader.interactive:
                print()
            return 0

        if not line:
            continue
        if not client.is_server_alive():
            ui.error("Server closed the connection")
            return 1

        try:
            frame = client.send_frame(line, raw=True)
        except (DaemonError, ProtocolError) as e:
            ui.error(str(e))
            return 1
        if frame is None:
            ui.error("Server closed the connection")
            return 1

        write_verbatim(frame.raw)
        if frame.is_ok and _is_exit(line):
            return 0
