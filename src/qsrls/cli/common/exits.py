"""Exit handling utilities for the CLI."""

from typing import NoReturn

import typer

from qsrls.cli.common.output import out
from qsrls.core.errors import ErrorKind, Outcome

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def ok_exit(msg: str | None = None) -> NoReturn:
    """Exit successfully with an optional informational message."""
    if msg:
        out.info(msg)
    raise typer.Exit(EXIT_OK)


def die(msg: str, code: int = EXIT_FAILURE) -> NoReturn:
    """Exit with an error message and optional exit code."""
    out.error(msg)
    raise typer.Exit(code)


def warn_exit(msg: str, code: int = EXIT_OK) -> NoReturn:
    """Exit with a warning message and optional exit code."""
    out.warn(msg)
    raise typer.Exit(code)


def exit_code(outcome: Outcome) -> int:
    """Map an outcome to the process exit code (2 for invalid input)."""
    if outcome.ok:
        return EXIT_OK
    if outcome.kind is ErrorKind.VALIDATION:
        return EXIT_USAGE
    return EXIT_FAILURE


def finish(outcome: Outcome) -> NoReturn:
    """Report an outcome and exit with its code."""
    if outcome.ok:
        out.success(outcome.message)
    else:
        out.error(outcome.message)
    raise typer.Exit(exit_code(outcome))
