"""
Error mapping and CLI utilities.

Provides centralized exception-to-exit-code mapping and CLI command wrappers
to ensure consistent error handling across all Typer commands.
"""
from __future__ import annotations

import typer
from typing import Callable, TypeVar

T = TypeVar('T')

# Keyed by class name; subclasses inherit the code of their nearest mapped base
EXIT_CODES = {
    "BlobMissingError": 1,
    "ValueError": 2,
    "ReferenceResolutionError": 2,
    "ManifestFetchError": 3,
    "ManifestParseError": 3,
    "TransferError": 3,
    "OperationCancelled": 4,
}


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    Returns:
    - 1: Destination is missing a layer the archive relies on (BlobMissingError)
    - 2: Invalid input (ValueError, ReferenceResolutionError)
    - 3: Fetch, parse or transfer failure, or unknown error
    - 4: Cancelled or timed out (OperationCancelled, DeadlineExceeded)

    Args:
        exc: Exception to map

    Returns:
        Exit code (1-4, with 3 as fallback for unknown exceptions)
    """
    for cls in type(exc).__mro__:
        if cls.__name__ in EXIT_CODES:
            return EXIT_CODES[cls.__name__]
    return 3


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Unified error wrapper for CLI commands.

    Executes the given function and maps any exceptions to appropriate
    exit codes using typer.Exit, after printing the error to stderr.

    Args:
        func: Function to execute

    Returns:
        Function result if successful

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    try:
        return func()
    except Exception as e:
        from .printers import print_error
        print_error(e)
        raise typer.Exit(code=exit_code_for(e)) from e
