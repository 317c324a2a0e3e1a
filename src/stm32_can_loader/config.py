"""
Loader Configuration
====================

Runtime settings for a flash operation. Configuration can come from:
- Default values (defined here)
- Environment variables
- Command-line options (applied by the CLI on top of the above)

Environment Variables
---------------------
- STM32_CAN_LOADER_DEVICE: CAN channel name (e.g. "can0", "vcan0")
- STM32_CAN_LOADER_INTERFACE: python-can interface type (e.g. "socketcan")
- STM32_CAN_LOADER_BASE_ADDRESS: flash base address ("0x08000000")
- STM32_CAN_LOADER_ATTEMPTS: shared retry budget for timeouts
"""

import logging
import os
from dataclasses import dataclass
from typing import Final

logger = logging.getLogger(__name__)


# Start of the internal flash on STM32 devices
FLASH_BASE_ADDRESS: Final[int] = 0x08000000

DEFAULT_DEVICE: Final[str] = "can0"
DEFAULT_INTERFACE: Final[str] = "socketcan"

# Number of timeouts that may be retried over a whole flash operation
DEFAULT_ATTEMPTS: Final[int] = 10

# Addresses are sent as 4 bytes on the wire
MAX_ADDRESS: Final[int] = 0xFFFFFFFF

ENV_PREFIX: Final[str] = "STM32_CAN_LOADER_"


@dataclass
class LoaderConfig:
    """
    Configuration for one flash operation.

    Attributes:
        device: CAN channel to open (default: "can0")
        interface: python-can interface type (default: "socketcan")
        base_address: Flash address the image is anchored at
        attempts: Retry budget shared by every retryable step
    """

    device: str = DEFAULT_DEVICE
    interface: str = DEFAULT_INTERFACE
    base_address: int = FLASH_BASE_ADDRESS
    attempts: int = DEFAULT_ATTEMPTS

    @classmethod
    def from_env(cls) -> "LoaderConfig":
        """
        Create LoaderConfig from environment variables.

        Unset variables keep their defaults; values that cannot be parsed
        are ignored with a warning.

        Returns:
            LoaderConfig with values from environment variables
        """
        config = cls()

        if device := os.environ.get(ENV_PREFIX + "DEVICE"):
            config.device = device

        if interface := os.environ.get(ENV_PREFIX + "INTERFACE"):
            config.interface = interface

        if base_address := os.environ.get(ENV_PREFIX + "BASE_ADDRESS"):
            try:
                value = int(base_address, 0)
            except ValueError:
                logger.warning("Ignoring invalid base address: %r", base_address)
            else:
                if 0 <= value <= MAX_ADDRESS:
                    config.base_address = value
                else:
                    logger.warning("Ignoring invalid base address: %r", base_address)

        if attempts := os.environ.get(ENV_PREFIX + "ATTEMPTS"):
            try:
                value = int(attempts)
            except ValueError:
                logger.warning("Ignoring invalid attempts value: %r", attempts)
            else:
                if value >= 0:
                    config.attempts = value
                else:
                    logger.warning("Ignoring negative attempts value: %d", value)

        return config
