#!/usr/bin/env python3
"""
Main entry point for the rong client.

Delegates to the UI layer in rong.ui.cli to keep the console script
mapping stable.
"""

from rong.ui.cli import run as rong


if __name__ == "__main__":
    rong()
