"""Unix socket server for the rong daemon.

One process, one thread: a selector waits on the listening socket and every
client socket, and each ready socket is serviced in turn. A request is
dispatched as soon as its line is complete and its response is written
before the loop moves on, so a client always gets exactly one response per
request, in order.

Command handlers run to completion inside the loop. A handler doing slow
disk I/O holds up every other connection for that long.

Usage:
    python -m rong.daemon.server [--socket-path PATH] [--daemonize]

    Or let the ``rong`` client start it on first use.
"""

import argparse
import fcntl
import logging
import os
import selectors
import signal
import socket
import stat
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional

import setproctitle

from rong import __version__
from rong.core.configs import DaemonConfig, get_daemon_config, with_socket_path
from rong.daemon.client import is_daemon_running
from rong.daemon.commands import dispatch
from rong.daemon.protocol import ENCODING, ERRORS, Frame
from rong.daemon.state import DaemonState, Session

logger = logging.getLogger(__name__)

GREETING = f"Rong v{__version__} -- in-memory text buffers at your service"


class ServerExit(BaseException):
    """
    Raised from the SIGTERM/SIGINT handler to unwind the event loop.

    Derives from BaseException so command error handling never swallows it.
    """

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(signal.Signals(signum).name)


class DaemonAlreadyRunning(RuntimeError):
    """Another daemon owns the socket path."""


@dataclass
class Connection:
    sock: socket.socket
    session: Session


def configure_logging(level: str = "INFO", log_path: Optional[Path] = None) -> int:
    """
    Configure process-wide logging and return the resolved level.

    Logs go to ``log_path`` when given (daemonized server), stderr otherwise.
    """
    resolved = getattr(logging, level.upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler_args = {"filename": str(log_path)} if log_path else {"stream": sys.stderr}
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
        **handler_args,
    )
    if resolved != getattr(logging, level.upper(), None):
        logger.warning(f"Invalid log level '{level}', using INFO")
    return resolved


class RongServer:
    """
    Single-threaded connection multiplexer.

    The listening socket is created by the caller (see ``bind_listener``);
    the server only accepts on it and never touches the socket file.
    """

    def __init__(
        self,
        listener: socket.socket,
        state: DaemonState,
        chunk_size: int = 4096,
        max_request_bytes: int = 1024 * 1024,
        write_timeout: float = 5.0,
    ):
        """
        Initialize server.

        Args:
            listener: Bound, listening Unix stream socket
            state: Buffer store and session table
            chunk_size: Bytes read per readiness event
            max_request_bytes: Longest request line accepted
            write_timeout: Seconds a client may stall a response write
        """
        self.listener = listener
        self.state = state
        self.chunk_size = chunk_size
        self.max_request_bytes = max_request_bytes
        self.write_timeout = write_timeout
        self.connections: Dict[int, Connection] = {}
        self._running = False

        self.selector = selectors.DefaultSelector()
        self.listener.setblocking(False)
        self.selector.register(self.listener, selectors.EVENT_READ, data=None)

    def serve_forever(self, poll_interval: Optional[float] = None) -> None:
        """
        Run the event loop until ``stop`` is called or ServerExit is raised.

        Args:
            poll_interval: Longest wait per round; None waits until a socket
                is ready (``stop`` then only takes effect on the next event)
        """
        self._running = True
        logger.info("Server loop started")
        try:
            while self._running:
                self.serve_once(poll_interval)
        finally:
            self.shutdown()

    def serve_once(self, timeout: Optional[float] = None) -> None:
        """Wait for readiness once and service every ready socket."""
        for key, _ in self.selector.select(timeout):
            if key.data is None:
                self._accept()
            else:
                self._service(key.data)

    def stop(self) -> None:
        self._running = False

    def shutdown(self) -> None:
        """Close every client connection. The listener is left to its owner."""
        for conn in list(self.connections.values()):
            self._teardown(conn)
        try:
            self.selector.unregister(self.listener)
        except (KeyError, ValueError):
            pass
        self.selector.close()

    # ------------------------------------------------------------------

    def _accept(self) -> None:
        try:
            sock, _ = self.listener.accept()
        except BlockingIOError:
            return
        except OSError as e:
            logger.warning(f"Accept failed: {e}")
            return

        sock.settimeout(self.write_timeout)
        session = self.state.sessions.open()
        conn = Connection(sock, session)
        self.connections[session.id] = conn
        self.selector.register(sock, selectors.EVENT_READ, data=conn)
        logger.info(f"Session {session.id} connected ({len(self.connections)} open)")

        self._send(conn, Frame.ok(GREETING).encode())

    def _service(self, conn: Connection) -> None:
        session = conn.session
        try:
            data = conn.sock.recv(self.chunk_size)
        except OSError as e:
            logger.warning(f"Session {session.id}: read failed: {e}")
            self._teardown(conn)
            return

        if not data:
            self._teardown(conn)
            return

        session.inbuf.extend(data)
        while not session.closing:
            newline = session.inbuf.find(b"\n")
            if newline < 0:
                break
            line = bytes(session.inbuf[:newline]).decode(ENCODING, ERRORS)
            del session.inbuf[: newline + 1]
            if line.endswith("\r"):
                line = line[:-1]

            logger.debug(f"Session {session.id} <- {line!r}")
            response = dispatch(self.state, session, line)
            if not self._send(conn, response.encode()):
                return

        if session.closing:
            self._teardown(conn)
        elif len(session.inbuf) > self.max_request_bytes:
            logger.warning(f"Session {session.id}: request exceeds {self.max_request_bytes} bytes")
            self._send(conn, Frame.error("Request too long").encode())
            self._teardown(conn)

    def _send(self, conn: Connection, payload: bytes) -> bool:
        """Write a whole response; a failed write counts as a disconnect."""
        try:
            conn.sock.sendall(payload)
            return True
        except OSError as e:
            logger.warning(f"Session {conn.session.id}: write failed: {e}")
            self._teardown(conn)
            return False

    def _teardown(self, conn: Connection) -> None:
        session_id = conn.session.id
        if self.connections.pop(session_id, None) is None:
            return
        try:
            self.selector.unregister(conn.sock)
        except (KeyError, ValueError):
            pass
        try:
            conn.sock.close()
        except OSError:
            pass
        self.state.sessions.close(session_id)
        logger.info(f"Session {session_id} disconnected ({len(self.connections)} open)")


# ============================================================================
# Bootstrap
# ============================================================================

def _raise_server_exit(signum, frame) -> None:
    raise ServerExit(signum)


def install_signal_handlers() -> None:
    """
    Ignore hang-ups and broken pipes; turn SIGTERM/SIGINT into ServerExit.

    A client vanishing mid-write or the controlling terminal going away must
    not take the shared server down.
    """
    signal.signal(signal.SIGHUP, signal.SIG_IGN)
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)
    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _raise_server_exit)


def acquire_lock(lock_path: Path):
    """
    Take an exclusive lock guarding the socket path.

    Returns the open lock file, which must stay open for the daemon's lifetime.

    Raises:
        DaemonAlreadyRunning: If another process holds the lock
    """
    lock_file = open(lock_path, "a")
    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        lock_file.close()
        raise DaemonAlreadyRunning(f"Another daemon holds {lock_path}")
    return lock_file


def bind_listener(socket_path: Path, backlog: int = 16) -> socket.socket:
    """
    Create the listening socket, replacing a stale socket file.

    Raises:
        DaemonAlreadyRunning: If a live daemon answers on the path
        OSError: If the socket cannot be created or bound
    """
    if socket_path.exists() or socket_path.is_symlink():
        if is_daemon_running(socket_path):
            raise DaemonAlreadyRunning(f"A server is already listening on {socket_path}")
        logger.info(f"Removing stale socket {socket_path}")
        socket_path.unlink()

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(str(socket_path))
        os.chmod(socket_path, 0o600)
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    return sock


def daemonize(log_path: Path) -> None:
    """Double-fork into the background with stdio pointed at the log file."""
    pid = os.fork()
    if pid > 0:
        # Parent exits
        os._exit(0)

    os.setsid()

    pid = os.fork()
    if pid > 0:
        os._exit(0)

    os.chdir("/")
    with open(os.devnull, "r") as devnull:
        os.dup2(devnull.fileno(), sys.stdin.fileno())
    with open(log_path, "a") as log_file:
        os.dup2(log_file.fileno(), sys.stdout.fileno())
        os.dup2(log_file.fileno(), sys.stderr.fileno())


def secure_runtime_dir(runtime_dir: Path) -> None:
    """
    Create the runtime directory, or take over an existing one, with mode 0700.

    Raises:
        PermissionError: If the path is a symlink, not a directory, or owned
            by another user
        OSError: If the directory cannot be created
    """
    runtime_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    info = os.lstat(runtime_dir)
    if not stat.S_ISDIR(info.st_mode):
        raise PermissionError(f"{runtime_dir} is not a directory")
    if info.st_uid != os.getuid():
        raise PermissionError(f"{runtime_dir} is owned by uid {info.st_uid}")
    if stat.S_IMODE(info.st_mode) != 0o700:
        logger.warning(f"Tightening permissions of {runtime_dir} to 0700")
        os.chmod(runtime_dir, 0o700)


def _cleanup(config: DaemonConfig) -> None:
    for path in (config.socket_path, config.pid_path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")


def run_daemon(
    socket_path: Optional[str] = None,
    daemonize_process: bool = False,
    config: Optional[DaemonConfig] = None,
) -> int:
    """
    Run the daemon server.

    Args:
        socket_path: Path to Unix socket (default from configuration)
        daemonize_process: Fork to background (Unix only)
        config: Daemon settings (default: loaded from config files/env)

    Returns:
        Process exit status: 0 after a clean shutdown, 1 on a fatal error
    """
    config = config or get_daemon_config()
    if socket_path:
        config = with_socket_path(config, socket_path)

    runtime_dir = config.socket_path.parent
    try:
        secure_runtime_dir(runtime_dir)
    except OSError as e:
        configure_logging(config.log_level)
        logger.critical(f"Fatal: unusable runtime directory {runtime_dir}: {e}")
        return 1

    configure_logging(config.log_level, config.log_path if daemonize_process else None)

    try:
        lock_file = acquire_lock(config.lock_path)
    except (OSError, DaemonAlreadyRunning) as e:
        logger.critical(f"Fatal: cannot lock {config.lock_path}: {e}")
        return 1

    try:
        listener = bind_listener(config.socket_path)
    except (OSError, DaemonAlreadyRunning) as e:
        lock_file.close()
        logger.critical(f"Fatal: cannot listen on {config.socket_path}: {e}")
        return 1

    if daemonize_process:
        daemonize(config.log_path)

    state = DaemonState()
    status = 0
    try:
        # Signals from here on end up in the cleanup below.
        install_signal_handlers()
        config.pid_path.write_text(str(os.getpid()))
        setproctitle.setproctitle(f"rongd {config.socket_path}")

        server = RongServer(
            listener,
            state,
            chunk_size=config.chunk_size,
            max_request_bytes=config.max_request_bytes,
        )
        logger.info(f"Rong v{__version__} listening on {config.socket_path} (pid {os.getpid()})")
        server.serve_forever()
    except ServerExit as e:
        logger.info(f"Server exited ({e})")
    except Exception:
        logger.exception("Fatal: server loop crashed")
        status = 1
    finally:
        listener.close()
        _cleanup(config)
        stats = state.get_stats()
        logger.info(
            f"Daemon stopped after {stats['uptime_seconds']:.0f}s "
            f"({stats['buffers']} buffers discarded)"
        )
        lock_file.close()

    return status


def main(argv=None) -> int:
    """Daemon entry point."""
    parser = argparse.ArgumentParser(
        prog="rongd",
        description="Rong daemon - keeps files in memory for rong clients",
    )
    parser.add_argument(
        "--socket-path",
        help="Path to Unix socket",
    )
    parser.add_argument(
        "--daemonize",
        action="store_true",
        help="Fork to background",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (default: INFO, or log_level from config)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"rongd {__version__}",
    )

    args = parser.parse_args(argv)

    try:
        config = get_daemon_config()
    except ValueError as e:
        print(f"rongd: {e}", file=sys.stderr)
        return 1
    if args.log_level:
        config = replace(config, log_level=args.log_level.upper())

    return run_daemon(
        socket_path=args.socket_path,
        daemonize_process=args.daemonize,
        config=config,
    )


if __name__ == "__main__":
    raise SystemExit(main())
