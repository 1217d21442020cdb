"""In-memory state owned by the daemon's event loop.

Two structures live here:
- BufferStore: absolute file path -> text held in memory
- SessionTable: one Session per connected client

Thread safety: nothing in this module is thread-safe. The daemon serves
every connection from a single thread, one command at a time, so no
locking is needed as long as only the event loop touches the state.
"""

import itertools
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List

from rong.daemon.protocol import ENCODING, ERRORS


@dataclass
class Session:
    """Per-connection state."""
    id: int
    cwd: str = "/"
    inbuf: bytearray = field(default_factory=bytearray)
    closing: bool = False

    def resolve(self, path: str) -> str:
        """Turn a client-supplied path into an absolute, normalised one."""
        return os.path.normpath(os.path.join(self.cwd, path))


class SessionTable:
    """Sessions keyed by a monotonically assigned id."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._sessions: Dict[int, Session] = {}

    def open(self) -> Session:
        session = Session(id=next(self._ids))
        self._sessions[session.id] = session
        return session

    def close(self, session_id: int) -> None:
        """Forget a session. Closing an unknown id is a no-op."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.closing = True
            session.inbuf.clear()

    def __len__(self) -> int:
        return len(self._sessions)


class BufferStore:
    """
    Files held in memory, keyed by absolute path.

    Text is decoded with ``surrogateescape`` so any byte sequence read from
    disk is written back unchanged.
    """

    def __init__(self):
        self._buffers: Dict[str, str] = {}

    @staticmethod
    def read_file(path: str) -> str:
        with open(path, "rb") as f:
            return f.read().decode(ENCODING, ERRORS)

    @staticmethod
    def write_file(path: str, text: str) -> None:
        with open(path, "wb") as f:
            f.write(text.encode(ENCODING, ERRORS))

    def save(self, path: str) -> None:
        """Write the buffer for ``path`` back to disk."""
        self.write_file(path, self._buffers[path])

    def put(self, path: str, text: str) -> None:
        self._buffers[path] = text

    def get(self, path: str) -> str:
        return self._buffers[path]

    def kill(self, path: str) -> None:
        del self._buffers[path]

    def paths(self) -> List[str]:
        return sorted(self._buffers)

    def total_size(self) -> int:
        return sum(len(text) for text in self._buffers.values())

    def __contains__(self, path: object) -> bool:
        return path in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)


class DaemonState:
    """
    Everything the daemon keeps in memory.

    Holds the shared buffer store and the session table. Both are owned by
    the event loop; command handlers receive the state together with the
    session of the connection they serve.
    """

    def __init__(self):
        self.start_time = time.time()
        self.buffers = BufferStore()
        self.sessions = SessionTable()

    def get_stats(self) -> Dict[str, Any]:
        """Get daemon statistics."""
        return {
            "uptime_seconds": time.time() - self.start_time,
            "buffers": len(self.buffers),
            "buffer_chars": self.buffers.total_size(),
            "sessions": len(self.sessions),
        }
