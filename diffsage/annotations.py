"""
GitHub Actions workflow-command output.

Library code writes to stderr so hosts that speak a protocol over stdout
are not disturbed.
"""

import os
import sys


def _emit(command: str, message: str) -> None:
    print(f"::{command}::{message}", file=sys.stderr)


def warn(message: str) -> None:
    """Emit a warning in GitHub Actions-friendly format."""
    _emit("warning", message)


def notice(message: str) -> None:
    _emit("notice", message)


def debug(message: str) -> None:
    """Emit a debug line when DIFFSAGE_DEBUG is set."""
    if os.environ.get("DIFFSAGE_DEBUG", "").lower() in ("true", "1", "yes"):
        _emit("debug", message)
