"""
STM32 CAN Loader Error Hierarchy
================================

This module defines the exception hierarchy for the whole loader. All
exceptions inherit from LoaderError, allowing callers to catch every
loader-related error with a single except clause if desired.

Exception Hierarchy
-------------------
LoaderError (base)
├── PlanningError (image cannot be turned into a command plan)
│   ├── OutOfOrderSegmentsError - segment starts before the previous one ends
│   └── NonContiguousSegmentsError - gap between two segments
├── FirmwareFormatError - firmware file cannot be read as ELF/HEX/BIN
└── CommsError (CAN communication)
    ├── TransportError - bus missing, down, or send failed
    └── FlashError - the bootloader did not answer as expected
        └── StepTimeoutError - fatal timeout on an expected response

Planning errors are always raised before the first frame is sent. Comms
errors are raised while the plan executes, after the transport has been
stopped.
"""

from typing import Optional


# =============================================================================
# Base Exception Class
# =============================================================================

class LoaderError(Exception):
    """
    Base exception for all loader errors.

    All exceptions in the package inherit from this class:

        try:
            flash_file("firmware.elf", transport)
        except LoaderError as e:
            print(f"Error: {e}")
    """
    pass


# =============================================================================
# Planning Exceptions
# =============================================================================

class PlanningError(LoaderError):
    """
    The firmware image cannot be compiled into a command plan.

    Attributes:
        address: Physical address of the offending segment
        expected: Address the segment was expected to start at
    """

    def __init__(self, address: int, expected: int, message: str = ""):
        self.address = address
        self.expected = expected
        if not message:
            message = (
                f"segment at 0x{address:08X} does not start at the "
                f"expected address 0x{expected:08X}"
            )
        super().__init__(message)


class OutOfOrderSegmentsError(PlanningError):
    """
    A segment starts before the end of the data accumulated so far.

    Segments are consumed in the order they appear in the firmware file;
    they are never sorted.
    """

    def __init__(self, address: int, expected: int):
        super().__init__(
            address,
            expected,
            f"the firmware segments are not in order: segment at "
            f"0x{address:08X} overlaps data ending at 0x{expected:08X}",
        )


class NonContiguousSegmentsError(PlanningError):
    """
    A segment starts after the end of the data accumulated so far.

    Gaps are never filled; the image must be contiguous from the flash
    base address.
    """

    def __init__(self, address: int, expected: int):
        super().__init__(
            address,
            expected,
            f"non-contiguous segments are not supported: segment at "
            f"0x{address:08X} leaves a {address - expected} byte gap after "
            f"0x{expected:08X}",
        )


# =============================================================================
# Firmware File Exceptions
# =============================================================================

class FirmwareFormatError(LoaderError):
    """
    The firmware file cannot be read.

    Raised when an ELF file has a bad magic number, is not a 32-bit
    little-endian image, or is truncated.
    """
    pass


# =============================================================================
# Communication Exceptions
# =============================================================================

class CommsError(LoaderError):
    """Base exception for CAN communication errors."""
    pass


class TransportError(CommsError):
    """
    The CAN transport failed.

    Raised when:
    - The CAN interface does not exist or is down
    - A frame cannot be queued for transmission
    - The transport is used before start() or after stop()

    Transport errors are never retried.
    """
    pass


class FlashError(CommsError):
    """
    The bootloader did not respond as expected.

    Attributes:
        message: Diagnostic attached to the failing plan step
        step_index: Index of the failing step in the plan (optional)
    """

    def __init__(self, message: str, step_index: Optional[int] = None):
        self.message = message
        self.step_index = step_index
        super().__init__(message)


class StepTimeoutError(FlashError):
    """
    An expected response did not arrive in time and cannot be retried.

    Either the step is not retryable (data acknowledgments, verify
    echoes) or the shared retry budget is exhausted.
    """
    pass
