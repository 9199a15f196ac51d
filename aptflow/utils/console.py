"""
Styled progress messages for the terminal.
"""

from __future__ import annotations

from rich.console import Console

_console = Console(highlight=False)


def get_console() -> Console:
    return _console


def set_console(console: Console) -> None:
    """Replace the shared console (tests record output this way)."""
    global _console
    _console = console


def step(message: str) -> None:
    _console.print(f"\n{message}\n", style="bold bright_blue", markup=False)


def success(message: str) -> None:
    _console.print(f"\n{message}\n", style="bold bright_green", markup=False)


def failure(message: str) -> None:
    _console.print(f"\n{message}\n", style="bold bright_red", markup=False)
