"""Line-oriented text protocol spoken between rong clients and the daemon.

Request format (client -> server), one line terminated by ``\\n``:

    load "test file.txt" other.txt
    cat test\\ file.txt

    Tokens are separated by whitespace. A token is a double-quoted run,
    a single-quoted run, or a bare run of non-space, non-control, non-quote
    characters. Backslash escapes are recognised in all three forms.

Response format (server -> client), one of three frames:

    single:       OK[ message]\\n  or  ERR[ message]\\n
    multi:        .OK\\n  <lines>  .\\n
    exact:        ..OK\\n <lines>  .\\n

    In multi-line frames a content line starting with ``.`` gets one extra
    ``.`` prepended; the terminator is a line holding a single ``.``.
    Exact frames carry text split on ``\\n``, so text ending in a newline
    produces one trailing blank line and text without one does not.

Bytes on the wire are UTF-8; undecodable bytes survive a round trip through
``surrogateescape``.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

ENCODING = "utf-8"
ERRORS = "surrogateescape"

OK = "OK"
ERR = "ERR"
STATUSES = (OK, ERR)

SINGLE = "single"
MULTI = "multi"
EXACT = "exact"

_MODE_PREFIX = {SINGLE: "", MULTI: ".", EXACT: ".."}
_PREFIX_MODE = {0: SINGLE, 1: MULTI, 2: EXACT}

TERMINATOR = "."


class ParseError(ValueError):
    """Raised when a request line does not follow the token grammar."""


class ProtocolError(Exception):
    """Raised when a response frame is malformed or cut short."""


# ============================================================================
# Request tokens
# ============================================================================

_TOKEN_RE = re.compile(
    r"""
    "((?:[^"\\]|\\.)*)"                                 # "double quoted"
    | '((?:[^'\\]|\\.)*)'                               # 'single quoted'
    | ((?:\\[^\x00-\x1f\x7f]|[^\s\x00-\x1f\x7f"'\\])+)  # bare
    """,
    re.VERBOSE | re.DOTALL,
)
_SPACE_RE = re.compile(r"\s*")
_ESCAPE_RE = re.compile(r"\\(x[0-9A-Fa-f]{2}|.)", re.DOTALL)
_BARE_RE = re.compile(r"[^\s\x00-\x1f\x7f\"'\\]+\Z")

_NAMED_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "e": "\x1b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}
_ESCAPE_NAMES = {char: f"\\{name}" for name, char in _NAMED_ESCAPES.items()}
_ESCAPE_NAMES.update({"\\": "\\\\", '"': '\\"'})


def _unescape_match(match: "re.Match") -> str:
    seq = match.group(1)
    if len(seq) == 3:
        return chr(int(seq[1:], 16))
    if seq in _NAMED_ESCAPES:
        return _NAMED_ESCAPES[seq]
    if seq.isalnum():
        # Unknown letter/digit escapes (\q, \0, a short \x) stay as written.
        return match.group(0)
    return seq


def unescape(text: str) -> str:
    """
    Resolve backslash escapes inside one token.

    Recognised: ``\\a \\b \\e \\f \\n \\r \\t``, ``\\xHH`` and a backslash
    before any character that is not a letter or digit, which yields that
    character (``\\\\``, ``\\'``, ``\\"``, ``\\ ``). Every other sequence is
    kept verbatim, backslash included.
    """
    if "\\" not in text:
        return text
    return _ESCAPE_RE.sub(_unescape_match, text)


def tokenize(line: str) -> List[str]:
    """
    Split a request line into unescaped tokens.

    Args:
        line: One request line without its terminating newline

    Returns:
        List of tokens, empty for a blank line

    Raises:
        ParseError: If any part of the line is not a well-formed token
    """
    tokens: List[str] = []
    pos = _SPACE_RE.match(line).end()
    end = len(line)

    while pos < end:
        match = _TOKEN_RE.match(line, pos)
        after = match.end() if match else pos
        if match is None or (after < end and not line[after].isspace()):
            raise ParseError(_describe_failure(line, after if match else pos))

        double, single, bare = match.groups()
        raw = next(part for part in (double, single, bare) if part is not None)
        tokens.append(unescape(raw))
        pos = _SPACE_RE.match(line, after).end()

    return tokens


def _describe_failure(line: str, pos: int) -> str:
    char = line[pos]
    if char in "\"'":
        if line.count(char, pos) == 1:
            return f"Unterminated quote at column {pos + 1}"
        return f"Unexpected quote at column {pos + 1}"
    if char == "\\":
        return f"Dangling backslash at column {pos + 1}"
    return f"Unexpected character {char!r} at column {pos + 1}"


def parse_request(line: str) -> Tuple[str, List[str]]:
    """
    Parse a request line into command name and arguments.

    Raises:
        ParseError: On malformed quoting or an empty line
    """
    tokens = tokenize(line)
    if not tokens:
        raise ParseError("Empty request")
    return tokens[0], tokens[1:]


def _escape(value: str) -> str:
    out = []
    for char in value:
        if char in _ESCAPE_NAMES:
            out.append(_ESCAPE_NAMES[char])
        elif char < " " or char == "\x7f":
            out.append(f"\\x{ord(char):02x}")
        else:
            out.append(char)
    return "".join(out)


def serialize(*values) -> str:
    """
    Build a request line from values, quoting and escaping as needed.

    Values that are non-empty and free of whitespace, control characters,
    quotes and backslashes go out bare; everything else is escaped and
    wrapped in double quotes. ``tokenize(serialize(*values))`` returns the
    values unchanged.
    """
    tokens = []
    for value in values:
        value = str(value)
        if _BARE_RE.match(value):
            tokens.append(value)
        else:
            tokens.append(f'"{_escape(value)}"')
    return " ".join(tokens)


# ============================================================================
# Response frames
# ============================================================================

def encode_response(status: str, mode: str = SINGLE, lines: Iterable[str] = ()) -> bytes:
    """
    Encode one response frame.

    Args:
        status: OK or ERR
        mode: single, multi or exact
        lines: Message words for single frames, content lines otherwise

    Returns:
        The frame as bytes, ready for ``sendall``
    """
    if status not in STATUSES:
        raise ValueError(f"Unknown status: {status!r}")
    if mode not in _MODE_PREFIX:
        raise ValueError(f"Unknown frame mode: {mode!r}")

    if mode == SINGLE:
        message = " ".join(lines).replace("\r\n", " ").replace("\n", " ")
        head = f"{status} {message}" if message else status
        return (head + "\n").encode(ENCODING, ERRORS)

    out = [_MODE_PREFIX[mode] + status]
    for line in lines:
        for part in line.split("\n"):
            out.append("." + part if part.startswith(".") else part)
    out.append(TERMINATOR)
    return ("\n".join(out) + "\n").encode(ENCODING, ERRORS)


@dataclass
class Frame:
    """One response frame, either about to be sent or just decoded."""

    status: str
    mode: str = SINGLE
    lines: List[str] = field(default_factory=list)
    raw: Optional[str] = None

    @classmethod
    def ok(cls, message: Optional[str] = None) -> "Frame":
        return cls(OK, SINGLE, [message] if message else [])

    @classmethod
    def error(cls, message: str) -> "Frame":
        return cls(ERR, SINGLE, [message] if message else [])

    @classmethod
    def multi(cls, lines: Iterable[str]) -> "Frame":
        return cls(OK, MULTI, list(lines))

    @classmethod
    def exact(cls, text: str) -> "Frame":
        return cls(OK, EXACT, text.split("\n"))

    @property
    def is_ok(self) -> bool:
        return self.status == OK

    @property
    def message(self) -> str:
        """Inline message of a single frame, or the content of a multi-line one."""
        if self.mode == SINGLE:
            return " ".join(self.lines)
        return self.content

    @property
    def content(self) -> str:
        """
        Payload as text.

        Multi frames end every line with a newline. Exact frames join their
        lines, so the trailing blank marker line restores the final newline.
        """
        if self.mode == SINGLE:
            return " ".join(self.lines)
        if self.mode == MULTI:
            return "".join(line + "\n" for line in self.lines)
        return "\n".join(self.lines)

    def encode(self) -> bytes:
        return encode_response(self.status, self.mode, self.lines)


class ResponseDecoder:
    """
    Incremental response decoder.

    Bytes are fed as they arrive from the socket, split at arbitrary points;
    ``next_frame`` returns a Frame once its last line is in, and keeps the
    partially read frame otherwise.

    With ``raw`` set, content lines are returned exactly as they appeared on
    the wire (dot-stuffing kept). ``Frame.raw`` always holds the frame's
    wire text.
    """

    def __init__(self, raw: bool = False):
        self.raw = raw
        self._buffer = bytearray()
        self._head: Optional[Tuple[str, str, str]] = None
        self._lines: List[str] = []
        self._wire: List[str] = []

    @property
    def pending(self) -> bool:
        """True while a frame has been started but not completed."""
        return bool(self._buffer) or self._head is not None

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def next_frame(self) -> Optional[Frame]:
        """
        Return the next complete frame, or None if more bytes are needed.

        Raises:
            ProtocolError: If the status line is not a known status
        """
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                return None
            line = bytes(self._buffer[:newline]).decode(ENCODING, ERRORS)
            del self._buffer[: newline + 1]
            self._wire.append(line)

            if self._head is None:
                self._head = self._parse_head(line)
                if self._head[1] == SINGLE:
                    return self._finish()
                continue

            if line == TERMINATOR:
                return self._finish()
            if not self.raw and line.startswith("."):
                line = line[1:]
            self._lines.append(line)

    def close(self) -> None:
        """
        Signal end of stream.

        Raises:
            ProtocolError: If a frame was cut off by the disconnect
        """
        if self.pending:
            self._reset()
            self._buffer.clear()
            raise ProtocolError("Connection closed in the middle of a response")

    def _parse_head(self, line: str) -> Tuple[str, str, str]:
        dots = len(line) - len(line.lstrip("."))
        if dots not in _PREFIX_MODE:
            self._reset()
            raise ProtocolError(f"Malformed response line: {line!r}")
        status, _, message = line[dots:].partition(" ")
        if status not in STATUSES:
            self._reset()
            raise ProtocolError(f"Unrecognized response status: {status!r}")
        return status, _PREFIX_MODE[dots], message

    def _finish(self) -> Frame:
        status, mode, message = self._head
        if mode == SINGLE:
            lines = [message] if message else []
        else:
            lines = self._lines
        frame = Frame(status, mode, lines, raw="".join(w + "\n" for w in self._wire))
        self._reset()
        return frame

    def _reset(self) -> None:
        self._head = None
        self._lines = []
        self._wire = []


def decode_response(data: bytes, raw: bool = False) -> Frame:
    """
    Decode exactly one frame held entirely in ``data``.

    Raises:
        ProtocolError: If ``data`` does not contain a complete frame
    """
    decoder = ResponseDecoder(raw=raw)
    decoder.feed(data)
    frame = decoder.next_frame()
    if frame is None:
        decoder.close()
        raise ProtocolError("No response frame")
    return frame
