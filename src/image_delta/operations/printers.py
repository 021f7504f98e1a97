"""
Human-readable output formatting.

Centralizes CLI output so commands stay thin. Summaries go to stdout,
errors to stderr; copy progress is written by the library to its report
stream and is not formatted here.
"""
from __future__ import annotations

import os

from rich.console import Console
from rich.markup import escape

_console = Console(highlight=False)
_err_console = Console(stderr=True, highlight=False)


def _format_bytes(size: int) -> str:
    """Format byte count in human-readable form."""
    value = float(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if value < 1024:
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} TB"


def print_pull_summary(base: str, final: str, output: str) -> None:
    """
    Print pull summary.

    Args:
        base: Base reference (or "scratch")
        final: Final reference
        output: Path of the written archive
    """
    size = os.path.getsize(output)
    _console.print(f"[bold]Pulled[/] {escape(final)} over {escape(base)}", soft_wrap=True)
    _console.print(f"[bold]Archive:[/] {escape(output)} ({_format_bytes(size)})", soft_wrap=True)


def print_push_summary(archive: str, destination: str) -> None:
    _console.print(f"[bold]Pushed[/] {escape(archive)} to {escape(destination)}", soft_wrap=True)


def print_vet_summary(archive: str, destination: str) -> None:
    _console.print(
        f"[bold]OK:[/] {escape(destination)} has every layer {escape(archive)} relies on",
        soft_wrap=True,
    )


def print_error(exc: BaseException) -> None:
    """Print an error message to stderr."""
    _err_console.print(f"[bold red]Error:[/] {escape(str(exc))}", soft_wrap=True)
