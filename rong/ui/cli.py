"""Main CLI entry point.

``rong`` forwards its arguments to the daemon as one request:

    rong cat notes.txt      -> cat notes.txt
    rong notes.txt todo.md  -> load notes.txt todo.md   (implicit load)
    rong                    -> interactive session

Whether the first argument is a command is decided by the server's own
command list (``help -``), so the client never hard-codes it.
"""

import os
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import typer
from rich.console import Console
from rich.table import Table

from rong import __version__
from rong.core.configs import DaemonConfig, get_daemon_config, with_socket_path
from rong.daemon.client import (
    DaemonClient,
    DaemonError,
    ensure_daemon_running,
    is_daemon_running,
    read_pid,
    stop_daemon,
)
from rong.daemon.protocol import SINGLE, Frame, ProtocolError, serialize
from rong.ui.output import UIManager, format_error, write_verbatim
from rong.ui.repl import run_repl

app = typer.Typer(
    add_completion=False,
    help="Rong - keep files in memory behind a tiny local server.",
)


class InvocationError(ValueError):
    """The command line names neither a command nor an existing file."""


def resolve_invocation(
    args: Sequence[str],
    command_names: Sequence[str],
    path_exists: Callable[[str], bool] = os.path.exists,
) -> Tuple[str, List[str]]:
    """
    Decide which request a command line stands for.

    Returns:
        (command, arguments)

    Raises:
        InvocationError: If the first argument is neither a command nor a path
    """
    first = args[0]
    if first in command_names:
        return first, list(args[1:])
    if path_exists(first):
        return "load", list(args)
    raise InvocationError(f"Unknown command or file '{first}'.")


def _load_config(ui: UIManager, socket_path: Optional[Path]) -> DaemonConfig:
    try:
        config = get_daemon_config()
    except ValueError as e:
        ui.error(f"Error loading configuration: {e}")
        raise typer.Exit(1)
    if socket_path:
        config = with_socket_path(config, socket_path)
    return config


def _emit(frame: Frame, command: str, raw: bool, ui: UIManager) -> None:
    if raw:
        write_verbatim(frame.raw)
    elif not frame.is_ok:
        ui.error(format_error(frame.message, command))
    elif frame.mode == SINGLE:
        if frame.message:
            typer.echo(frame.message)
    else:
        write_verbatim(frame.content)

    if not frame.is_ok:
        raise typer.Exit(1)


def _show_status(client: DaemonClient, config: DaemonConfig) -> None:
    ok, listing = client.request("list", fail_on_eof=True)
    buffers = listing.splitlines() if ok else []
    pid = read_pid(config.pid_path)

    table = Table(title="rong server", show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Server", client.greeting or "")
    table.add_row("Socket", str(client.socket_path))
    table.add_row("PID", str(pid) if pid is not None else "unknown")
    table.add_row("Buffers", str(len(buffers)))
    for path in buffers:
        table.add_row("", path)
    Console().print(table)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def main(
    args: Optional[List[str]] = typer.Argument(
        None, help="A command and its arguments, or files to load"
    ),
    socket_path: Optional[Path] = typer.Option(
        None, "--socket", "-s", help="Unix socket of the server"
    ),
    interactive: bool = typer.Option(
        False, "--interactive", "-i", help="Start an interactive session"
    ),
    raw: bool = typer.Option(False, "--raw", help="Print responses exactly as sent by the server"),
    no_start: bool = typer.Option(
        False, "--no-start", help="Fail instead of starting a server when none is running"
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", min=0, help="Seconds to wait for a response (0 waits forever)"
    ),
    status: bool = typer.Option(False, "--status", help="Show server status and exit"),
    stop: bool = typer.Option(False, "--stop", help="Stop the running server and exit"),
    version: bool = typer.Option(False, "--version", "-V", help="Print version and exit"),
) -> None:
    """
    Keep files in memory behind a local server.

    Example: rong notes.txt && rong cat notes.txt
    """
    ui = UIManager()
    if version:
        typer.echo(f"rong {__version__}")
        raise typer.Exit()

    config = _load_config(ui, socket_path)

    if stop:
        if not stop_daemon(config.pid_path):
            ui.error(f"No running server found for {config.socket_path}")
            raise typer.Exit(1)
        ui.success("Server stopped.")
        raise typer.Exit()

    if status and not is_daemon_running(config.socket_path):
        ui.error(f"No server listening on {config.socket_path}")
        raise typer.Exit(1)

    if not ensure_daemon_running(config.socket_path, auto_start=not no_start):
        ui.error(f"No server listening on {config.socket_path}")
        raise typer.Exit(1)

    client = DaemonClient(config.socket_path, timeout=config.timeout if timeout is None else timeout)
    try:
        client.connect()
    except DaemonError as e:
        ui.error(str(e))
        raise typer.Exit(1)

    with client:
        try:
            ok, message = client.chdir(os.getcwd())
            if not ok:
                ui.warning(f"Server cannot use the current directory: {message}")

            if status:
                _show_status(client, config)
                raise typer.Exit()

            if interactive or not args:
                raise typer.Exit(run_repl(client, ui))

            try:
                command, command_args = resolve_invocation(args, client.command_names())
            except InvocationError as e:
                ui.error(format_error(str(e)))
                raise typer.Exit(1)

            frame = client.send_frame(serialize(command, *command_args), raw=raw, fail_on_eof=True)
        except (DaemonError, ProtocolError) as e:
            ui.error(str(e))
            raise typer.Exit(1)

        _emit(frame, command, raw, ui)


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
