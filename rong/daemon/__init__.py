"""Daemon architecture for rong.

A long-running background process keeps files in memory; short-lived
``rong`` invocations talk to it over a Unix socket.

Architecture:
- protocol: request tokens and framed responses
- DaemonState: buffer store and per-connection sessions
- commands: name -> handler table and dispatch
- RongServer: single-threaded selector loop serving every client
- DaemonClient: one-request-one-response transactions from the client side
"""

from rong.daemon.client import DaemonClient
from rong.daemon.protocol import (
    Frame,
    ParseError,
    ProtocolError,
    ResponseDecoder,
    decode_response,
    encode_response,
    parse_request,
    serialize,
    tokenize,
)
from rong.daemon.state import DaemonState

__all__ = [
    "DaemonClient",
    "DaemonState",
    "Frame",
    "ParseError",
    "ProtocolError",
    "ResponseDecoder",
    "decode_response",
    "encode_response",
    "parse_request",
    "serialize",
    "tokenize",
]
