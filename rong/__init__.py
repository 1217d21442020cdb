"""Rong - keep files in memory behind a tiny local server."""

__version__ = "0.3.0"
