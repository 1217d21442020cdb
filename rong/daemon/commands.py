"""Command handlers and dispatch for the rong daemon.

Every handler has the signature ``handler(state, session, args) -> Frame``.
Success is an OK frame; failure is ``Frame.error(message)``. Handlers do not
raise for expected failures, the dispatcher only inspects the frame status
and prefixes error messages with the command name.

A message ending in ``.`` tells the client that ``help`` has more to say
about the command; the client turns the dot into a hint.
"""

import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from rong.daemon.protocol import Frame, ParseError, parse_request
from rong.daemon.state import DaemonState, Session

logger = logging.getLogger(__name__)

Handler = Callable[[DaemonState, Session, List[str]], Frame]


@dataclass(frozen=True)
class Command:
    """A named command with its help text."""
    name: str
    handler: Handler
    usage: str
    summary: str
    details: Tuple[str, ...] = ()


def _where(path: str, args: List[str]) -> str:
    # Name the offending file only when several were given.
    return f": {path}" if len(args) > 1 else ""


def _require_files(args: List[str]) -> Optional[Frame]:
    return Frame.error("Missing file argument.") if not args else None


def _not_loaded(state: DaemonState, session: Session, args: List[str]) -> Optional[Frame]:
    for arg in args:
        path = session.resolve(arg)
        if path not in state.buffers:
            return Frame.error("No such file loaded" + _where(path, args))
    return None


# ============================================================================
# Handlers
# ============================================================================

def cmd_cd(state: DaemonState, session: Session, args: List[str]) -> Frame:
    if not args:
        return Frame.ok(session.cwd)
    if len(args) > 1:
        return Frame.error("Too many arguments.")

    target = session.resolve(args[0])
    if not os.path.isdir(target):
        return Frame.error("Directory does not exist")
    session.cwd = target
    return Frame.ok(target)


def cmd_load(state: DaemonState, session: Session, args: List[str]) -> Frame:
    error = _require_files(args)
    if error:
        return error

    # Read everything first so a failure leaves the store untouched.
    loaded: Dict[str, str] = {}
    for arg in args:
        path = session.resolve(arg)
        where = _where(path, args)
        if path in state.buffers or path in loaded:
            return Frame.error("File already loaded" + where)
        if not os.path.isfile(path):
            return Frame.error("File does not exist" + where)
        try:
            loaded[path] = state.buffers.read_file(path)
        except OSError as e:
            return Frame.error(f"Cannot read file{where}: {e.strerror or e}")

    for path, text in loaded.items():
        state.buffers.put(path, text)
        logger.info(f"Loaded {path} ({len(text)} chars)")
    return Frame.ok()


def cmd_save(state: DaemonState, session: Session, args: List[str]) -> Frame:
    error = _require_files(args) or _not_loaded(state, session, args)
    if error:
        return error

    for arg in args:
        path = session.resolve(arg)
        try:
            state.buffers.save(path)
        except OSError as e:
            return Frame.error(f"Cannot write file{_where(path, args)}: {e.strerror or e}")
        logger.info(f"Saved {path}")
    return Frame.ok()


def cmd_cat(state: DaemonState, session: Session, args: List[str]) -> Frame:
    error = _require_files(args) or _not_loaded(state, session, args)
    if error:
        return error
    return Frame.exact("".join(state.buffers.get(session.resolve(arg)) for arg in args))


def cmd_kill(state: DaemonState, session: Session, args: List[str]) -> Frame:
    error = _require_files(args) or _not_loaded(state, session, args)
    if error:
        return error

    for path in {session.resolve(arg) for arg in args}:
        state.buffers.kill(path)
        logger.info(f"Killed {path}")
    return Frame.ok()


def cmd_list(state: DaemonState, session: Session, args: List[str]) -> Frame:
    if args:
        return Frame.error("Too many arguments.")
    return Frame.multi(state.buffers.paths())


def cmd_help(state: DaemonState, session: Session, args: List[str]) -> Frame:
    if not args:
        width = max(len(command.usage) for command in COMMANDS.values())
        return Frame.multi(
            f"{command.usage.ljust(width)}  {command.summary}"
            for command in COMMANDS.values()
        )
    if len(args) > 1:
        return Frame.error("Too many arguments.")

    if args[0] == "-":
        return Frame.ok(" ".join(COMMANDS))

    command = COMMANDS.get(args[0])
    if command is None:
        return Frame.error(f"No such command: {args[0]}.")
    return Frame.multi([f"Usage: {command.usage}", "", command.summary, *command.details])


def cmd_exit(state: DaemonState, session: Session, args: List[str]) -> Frame:
    session.closing = True
    return Frame.ok()


COMMANDS: Dict[str, Command] = {
    command.name: command
    for command in (
        Command(
            "cd", cmd_cd, "cd [dir]",
            "Print or change the working directory of this connection.",
            (
                "Relative file names given to other commands are resolved",
                "against this directory. A new connection starts at /.",
            ),
        ),
        Command(
            "cat", cmd_cat, "cat file...",
            "Print the in-memory contents of loaded files.",
            ("The text is returned byte for byte, trailing newline included.",),
        ),
        Command(
            "kill", cmd_kill, "kill file...",
            "Drop loaded files from memory without saving them.",
        ),
        Command(
            "list", cmd_list, "list",
            "List loaded files by absolute path.",
        ),
        Command(
            "load", cmd_load, "load file...",
            "Read files from disk into memory.",
            ("Nothing is loaded if any of the files cannot be read.",),
        ),
        Command(
            "save", cmd_save, "save file...",
            "Write loaded files back to disk.",
        ),
        Command(
            "help", cmd_help, "help [command|-]",
            "Show help for all commands or for one command.",
            ("'help -' prints the command names on a single line.",),
        ),
        Command(
            "exit", cmd_exit, "exit",
            "Close this connection. The server keeps running.",
        ),
    )
}


def dispatch(state: DaemonState, session: Session, line: str) -> Frame:
    """
    Run one request line for a session and return its response frame.

    Parse failures, unknown commands and handler failures all come back as
    ERR frames; nothing here escapes to the server loop.
    """
    try:
        name, args = parse_request(line)
    except ParseError as e:
        return Frame.error(f"Malformed request: {e}")

    command = COMMANDS.get(name)
    if command is None:
        return Frame.error(f"Command '{name}': Unrecognized command.")

    try:
        response = command.handler(state, session, args)
    except Exception:
        logger.exception(f"Command '{name}' failed in session {session.id}")
        return Frame.error(f"Command '{name}': Internal error")

    if not response.is_ok:
        return Frame.error(f"Command '{name}': {response.message}")
    return response
