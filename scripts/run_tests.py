#!/usr/bin/env python
"""
Test runner for rong.

    python scripts/run_tests.py              # all tests
    python scripts/run_tests.py protocol     # tests/test_protocol.py
    python scripts/run_tests.py server -x    # extra arguments go to pytest

The server and client tests open Unix sockets in a temporary directory;
they need a platform with AF_UNIX.
"""

import os
import subprocess
import sys
from pathlib import Path


def run_tests(test_module="", extra_args=()):
    """
    Run pytest on one test module or on the whole tests/ directory.

    Returns:
        True if pytest exited cleanly
    """
    project_root = Path(__file__).resolve().parent.parent
    os.chdir(project_root)

    target = f"tests/{test_module}" if test_module else "tests/"
    cmd = [sys.executable, "-m", "pytest", target, "-v", "--tb=short", *extra_args]

    print(f"Running: {' '.join(cmd)}")
    print("=" * 60)

    try:
        result = subprocess.run(cmd, check=False)
    except FileNotFoundError:
        print("Error: pytest not found. Install with: pip install -e '.[test]'")
        return False
    return result.returncode == 0


def _module_file(name):
    if not name.startswith("test_"):
        name = f"test_{name}"
    if not name.endswith(".py"):
        name = f"{name}.py"
    return name


def main():
    args = sys.argv[1:]
    if args and not args[0].startswith("-"):
        module = _module_file(args.pop(0))
        print(f"Running tests for module: {module}")
    else:
        module = ""
        print("Running all unit tests...")

    if run_tests(module, args):
        print("\nAll tests passed!")
    else:
        print("\nSome tests failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
