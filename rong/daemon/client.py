"""Client side of the rong protocol.

A DaemonClient holds one connection to the daemon. Each transaction sends a
single request line and blocks until exactly one response frame has been
read, however the bytes are split across socket reads.

Usage:
    with DaemonClient(socket_path).connect() as client:
        client.chdir(os.getcwd())
        ok, text = client.request("cat", "notes.txt")
"""

import os
import re
import selectors
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional, Tuple

from rong.core.configs import get_daemon_config
from rong.daemon.protocol import (
    ENCODING,
    ERRORS,
    Frame,
    ProtocolError,
    ResponseDecoder,
    SINGLE,
    serialize,
)

CHUNK_SIZE = 4096
GREETING_RE = re.compile(r"^Rong v(\d+\.\d+\.\d+) -- ")


class DaemonError(Exception):
    """Base class for client-side failures talking to the daemon."""


class DaemonUnavailable(DaemonError):
    """No daemon is listening on the socket."""


class DaemonTimeout(DaemonError):
    """The daemon did not answer within the configured timeout."""


class ConnectionClosed(DaemonError):
    """The daemon closed the connection before sending a response."""


class GreetingError(DaemonError):
    """The peer did not greet like a rong daemon."""


def get_socket_path() -> Path:
    """Get default socket path."""
    return get_daemon_config().socket_path


class DaemonClient:
    """
    Connection to the rong daemon.

    One request is outstanding at a time; a response is always read in full
    before the next request is written.
    """

    def __init__(self, socket_path: Optional[Path] = None, timeout: Optional[float] = 30.0):
        """
        Initialize client.

        Args:
            socket_path: Path to Unix socket
            timeout: Seconds to wait for any single read or write; 0 or None waits forever
        """
        self.socket_path = Path(socket_path) if socket_path else get_socket_path()
        self.timeout = timeout or None
        self.sock: Optional[socket.socket] = None
        self.server_version: Optional[str] = None
        self.greeting: Optional[str] = None
        self._decoder = ResponseDecoder()

    def __enter__(self) -> "DaemonClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def connect(self) -> "DaemonClient":
        """
        Connect and validate the server greeting.

        Raises:
            DaemonUnavailable: If nothing listens on the socket
            GreetingError: If the greeting is not a rong greeting
        """
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(str(self.socket_path))
        except (FileNotFoundError, ConnectionRefusedError) as e:
            sock.close()
            raise DaemonUnavailable(f"No server listening on {self.socket_path}") from e
        except socket.timeout as e:
            sock.close()
            raise DaemonTimeout(f"Timed out connecting to {self.socket_path}") from e

        self.sock = sock
        self._decoder = ResponseDecoder()
        try:
            frame = self._read_frame(fail_on_eof=True)
        except ProtocolError as e:
            self.close()
            raise GreetingError(f"Malformed greeting: {e}") from e

        match = GREETING_RE.match(frame.message) if frame.is_ok else None
        if match is None or frame.mode != SINGLE:
            self.close()
            raise GreetingError(f"Unexpected greeting: {frame.raw!r}")

        self.greeting = frame.message
        self.server_version = match.group(1)
        return self

    def close(self) -> None:
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError:
                pass
            self.sock = None

    # ------------------------------------------------------------------

    def send_frame(
        self,
        line: str,
        raw: bool = False,
        fail_on_eof: bool = False,
    ) -> Optional[Frame]:
        """
        Send one request line and read its response frame.

        Args:
            line: Request line without the newline
            raw: Keep content lines exactly as they appeared on the wire
            fail_on_eof: Raise instead of returning None on disconnect

        Returns:
            The response frame, or None if the server hung up first

        Raises:
            ConnectionClosed: On disconnect when ``fail_on_eof`` is set
            DaemonTimeout: If the server does not answer in time
            ProtocolError: If the response is malformed or cut short
        """
        if self.sock is None:
            if fail_on_eof:
                raise ConnectionClosed("Not connected")
            return None

        try:
            self.sock.sendall((line + "\n").encode(ENCODING, ERRORS))
        except socket.timeout as e:
            self.close()
            raise DaemonTimeout("Timed out sending request") from e
        except OSError:
            # The server is gone; whatever it sent before leaving is still
            # readable below.
            pass

        return self._read_frame(fail_on_eof=fail_on_eof, raw=raw)

    def send_command(
        self,
        line: str,
        raw: bool = False,
        fail_on_eof: bool = False,
    ) -> Tuple[bool, str]:
        """
        Send one request line and return ``(success, payload)``.

        The payload is the single-line message, the multi-line content, or,
        with ``raw``, the frame's wire text. A silent disconnect yields
        ``(False, "")`` unless ``fail_on_eof`` is set.
        """
        frame = self.send_frame(line, raw=raw, fail_on_eof=fail_on_eof)
        if frame is None:
            return False, ""
        if raw:
            return frame.is_ok, frame.raw
        return frame.is_ok, frame.content

    def request(self, command: str, *args, **kwargs) -> Tuple[bool, str]:
        """Serialize a command with its arguments and send it."""
        return self.send_command(serialize(command, *args), **kwargs)

    def command_names(self) -> List[str]:
        """Ask the server which commands it understands."""
        ok, message = self.request("help", "-", fail_on_eof=True)
        if not ok:
            raise DaemonError(message)
        return message.split()

    def chdir(self, path) -> Tuple[bool, str]:
        """Set this connection's working directory on the server."""
        return self.request("cd", str(path))

    def is_server_alive(self) -> bool:
        """
        Check, without blocking, whether the server is still connected.

        A readable socket with nothing to read means the server hung up.
        """
        if self.sock is None:
            return False
        selector = selectors.DefaultSelector()
        try:
            selector.register(self.sock, selectors.EVENT_READ)
            ready = selector.select(0)
        finally:
            selector.close()
        if not ready:
            return True
        try:
            return bool(self.sock.recv(1, socket.MSG_PEEK))
        except OSError:
            return False

    def _read_frame(self, fail_on_eof: bool = False, raw: bool = False) -> Optional[Frame]:
        self._decoder.raw = raw
        while True:
            try:
                frame = self._decoder.next_frame()
            except ProtocolError:
                # The stream is out of step after a bad frame.
                self.close()
                raise
            if frame is not None:
                return frame

            try:
                chunk = self.sock.recv(CHUNK_SIZE)
            except socket.timeout as e:
                self.close()
                raise DaemonTimeout(
                    f"No response from server within {self.timeout:g}s"
                ) from e
            except OSError:
                chunk = b""

            if not chunk:
                self.close()
                self._decoder.close()
                if fail_on_eof:
                    raise ConnectionClosed("Server closed the connection")
                return None
            self._decoder.feed(chunk)


# ============================================================================
# Daemon lifecycle helpers
# ============================================================================

def is_daemon_running(socket_path: Optional[Path] = None) -> bool:
    """
    Check whether a daemon accepts connections on the socket.

    Only connects; the greeting is not read.
    """
    path = Path(socket_path) if socket_path else get_socket_path()
    if not path.exists():
        return False
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(2.0)
    try:
        sock.connect(str(path))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def ensure_daemon_running(socket_path: Optional[Path] = None, auto_start: bool = True) -> bool:
    """
    Ensure daemon is running, optionally auto-starting it.

    Args:
        socket_path: Socket the daemon should listen on
        auto_start: If True, start daemon if not running

    Returns:
        True if daemon is running (or was started)
    """
    path = Path(socket_path) if socket_path else get_socket_path()
    if is_daemon_running(path):
        return True
    if not auto_start:
        return False

    try:
        subprocess.Popen(
            [
                sys.executable,
                "-m",
                "rong.daemon.server",
                "--daemonize",
                "--socket-path",
                str(path),
            ],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError:
        return False

    # Wait for daemon to be ready (max 5 seconds)
    for _ in range(50):
        time.sleep(0.1)
        if is_daemon_running(path):
            return True
    return False


def read_pid(pid_path: Path) -> Optional[int]:
    try:
        return int(pid_path.read_text().strip())
    except (OSError, ValueError):
        return None


def stop_daemon(pid_path: Path) -> bool:
    """
    Ask the daemon to shut down by sending SIGTERM to the pid on file.

    Returns True if a signal was delivered.
    """
    pid = read_pid(pid_path)
    if pid is None:
        return False
    try:
        os.kill(pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return False
    return True
