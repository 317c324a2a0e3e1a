"""
STM32 CAN Loader - Flash STM32 Firmware over CAN
================================================

This package flashes a firmware image into the internal flash of an STM32
microcontroller through the ST system bootloader's CAN protocol (the
AN3154 command set), verifies it, and starts the program.

The target must already be running its bootloader, and the CAN interface
must already be configured (bitrate set, link up).

Main Components
---------------
- **image**: Firmware loading (ELF, Intel HEX, raw binary) and
    linearization into one contiguous, 0xFF-padded buffer

- **protocol**: Command plan builder and the retry-driven execution
    engine that runs it

- **comms**: CAN transport over python-can

- **cli**: The stm32-can-loader command

Quick Start
-----------
Flash an ELF file from Python:
    >>> from stm32_can_loader import CanTransport, flash_file
    >>> flash_file("firmware.elf", CanTransport("can0"))

Or from the command line:
    $ stm32-can-loader --device can0 --write firmware.elf

Reference Documentation
-----------------------
- ST AN3154: CAN protocol used in the STM32 bootloader
- ST AN2606: STM32 microcontroller system memory boot mode
"""

__version__ = "1.0.0"

from stm32_can_loader.errors import (
    CommsError,
    FirmwareFormatError,
    FlashError,
    LoaderError,
    NonContiguousSegmentsError,
    OutOfOrderSegmentsError,
    PlanningError,
    StepTimeoutError,
    TransportError,
)
from stm32_can_loader.config import FLASH_BASE_ADDRESS, LoaderConfig
from stm32_can_loader.image import Image, Segment, linearize, load_segments
from stm32_can_loader.comms import CanTransport, Frame, Transport
from stm32_can_loader.protocol import (
    EngineListener,
    EngineState,
    ExecutionEngine,
    Plan,
    build_plan,
    flash_file,
    flash_image,
    flash_segments,
)

__all__ = [
    "__version__",
    # Errors
    "LoaderError",
    "PlanningError",
    "OutOfOrderSegmentsError",
    "NonContiguousSegmentsError",
    "FirmwareFormatError",
    "CommsError",
    "TransportError",
    "FlashError",
    "StepTimeoutError",
    # Configuration
    "FLASH_BASE_ADDRESS",
    "LoaderConfig",
    # Image
    "Image",
    "Segment",
    "linearize",
    "load_segments",
    # Comms
    "CanTransport",
    "Frame",
    "Transport",
    # Protocol
    "EngineListener",
    "EngineState",
    "ExecutionEngine",
    "Plan",
    "build_plan",
    "flash_file",
    "flash_image",
    "flash_segments",
]
