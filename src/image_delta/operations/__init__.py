"""
Operations package - glue between the CLI and the incremental library.

Centralizes error mapping and output formatting while keeping CLI commands
thin and testable.
"""
from .mappers import exit_code_for, run_and_exit

__all__ = ["exit_code_for", "run_and_exit"]
