"""
stm32-can-loader - Command-Line Interface
=========================================

Flashes, verifies and starts a firmware on an STM32 running its CAN
bootloader.

Usage Examples
--------------
Flash an ELF file on the default CAN device:
    $ stm32-can-loader --write firmware.elf

Use another device, with debug logging:
    $ stm32-can-loader -v -d can1 -w firmware.hex

Try it against a virtual bus:
    $ stm32-can-loader -i virtual -d test -w firmware.bin

Hardware Setup
--------------
Before running, ensure:
1. The CAN interface is configured and up
   (sudo ip link set can0 up type can bitrate 125000)
2. The target is running its system bootloader

Defaults can be changed through STM32_CAN_LOADER_* environment
variables (see stm32_can_loader.config).

Exit Codes
----------
0 - Success
1 - Missing --write, or planning, transport or flash error
2 - Firmware file cannot be read
3 - Internal error
"""

import logging
from pathlib import Path
from typing import Optional

import click

from stm32_can_loader import __version__
from stm32_can_loader.cli.errors import ExitCode, handle_cli_exception
from stm32_can_loader.comms import CanTransport
from stm32_can_loader.config import DEFAULT_DEVICE, LoaderConfig
from stm32_can_loader.image import linearize, load_segments
from stm32_can_loader.protocol import EngineListener, count_steps, flash_image

logger = logging.getLogger(__name__)


CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


def setup_logging(verbose: bool) -> None:
    """Configure logging; warnings only unless verbose, to keep the bar clean."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(name)s: %(message)s" if verbose else "%(message)s",
    )


class ProgressBarListener(EngineListener):
    """Renders engine progress on a click progress bar."""

    def __init__(self, bar) -> None:
        self.bar = bar
        self._position = 0

    def on_progress(self, completed: int, total: int) -> None:
        # A retry rewinds the cursor; the bar only moves forward
        if completed > self._position:
            self.bar.update(completed - self._position)
            self._position = completed


@click.command(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-d", "--device",
    type=str,
    default=None,
    help=f"CAN device to use (default: {DEFAULT_DEVICE})",
)
@click.option(
    "-w", "--write",
    "firmware",
    type=click.Path(dir_okay=False),
    default=None,
    help="Firmware to flash (ELF, Intel HEX or raw binary)",
)
@click.option(
    "-i", "--interface",
    type=str,
    default=None,
    help="python-can interface type (default: socketcan)",
)
@click.option(
    "-a", "--attempts",
    type=click.IntRange(min=0),
    default=None,
    help="Number of timeouts that may be retried (default: 10)",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable debug logging",
)
@click.version_option(version=__version__, prog_name="stm32-can-loader")
@click.pass_context
def main(
    ctx: click.Context,
    device: Optional[str],
    firmware: Optional[str],
    interface: Optional[str],
    attempts: Optional[int],
    verbose: bool,
) -> None:
    """
    Flash, verify and start a firmware on an STM32 over CAN.

    The target must be running its CAN bootloader, and the CAN device must
    be configured (bitrate and up) before running this program.
    """
    if firmware is None:
        click.echo("Missing argument: --write", err=True)
        click.echo(ctx.get_help())
        ctx.exit(ExitCode.FAILURE)

    setup_logging(verbose)

    config = LoaderConfig.from_env()
    if device is not None:
        config.device = device
    if interface is not None:
        config.interface = interface
    if attempts is not None:
        config.attempts = attempts

    click.echo(f"Flashing {firmware} using {config.device}...")

    try:
        segments = load_segments(Path(firmware), config.base_address)
        image = linearize(segments, config.base_address)

        transport = CanTransport(config.device, config.interface)
        with click.progressbar(length=count_steps(len(image)), label="Flashing") as bar:
            flash_image(
                image,
                transport,
                attempts=config.attempts,
                listeners=[ProgressBarListener(bar)],
            )
    except Exception as e:
        handle_cli_exception(e, verbose=verbose)

    click.echo("Done.")


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    main()
