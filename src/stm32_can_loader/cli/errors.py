"""
CLI Error Handling
==================

Maps loader exceptions to messages and exit codes.
"""

import sys
import traceback
from enum import IntEnum
from typing import NoReturn

import click

from stm32_can_loader.errors import (
    FirmwareFormatError,
    FlashError,
    LoaderError,
    PlanningError,
    TransportError,
)


class ExitCode(IntEnum):
    """Exit codes of the stm32-can-loader command."""
    SUCCESS = 0
    FAILURE = 1          # Missing --write, planning, transport or flash error
    INVALID_ARGS = 2     # Unreadable firmware file or invalid option value
    INTERNAL_ERROR = 3   # Unexpected internal error


def handle_cli_exception(error: Exception, verbose: bool = False) -> NoReturn:
    """
    Report an exception on stderr and exit with the matching code.

    Args:
        error: The exception that was raised
        verbose: If True, print full traceback for internal errors

    Raises:
        SystemExit: Always
    """
    if isinstance(error, PlanningError):
        click.echo(f"ERROR: {error}", err=True)
        sys.exit(ExitCode.FAILURE)

    elif isinstance(error, FirmwareFormatError):
        click.echo(f"Firmware error: {error}", err=True)
        sys.exit(ExitCode.FAILURE)

    elif isinstance(error, TransportError):
        click.echo(f"Transport error: {error}", err=True)
        sys.exit(ExitCode.FAILURE)

    elif isinstance(error, FlashError):
        # The step diagnostic is the whole message
        click.echo(error.message, err=True)
        sys.exit(ExitCode.FAILURE)

    elif isinstance(error, LoaderError):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.FAILURE)

    elif isinstance(error, click.BadParameter):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    elif isinstance(error, (FileNotFoundError, PermissionError, IsADirectoryError)):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    else:
        click.echo(f"Internal error: {error}", err=True)
        if verbose:
            traceback.print_exc()
        sys.exit(ExitCode.INTERNAL_ERROR)
