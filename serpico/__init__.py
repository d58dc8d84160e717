"""serpico: run and deploy MicroPython code on serial-attached boards."""

from __future__ import annotations

__all__ = ["main"]


def main() -> int:
    """Run the serpico command-line interface."""

    from .cli import main as _cli_main

    return _cli_main()
