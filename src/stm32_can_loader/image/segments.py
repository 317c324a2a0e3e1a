"""
Firmware Segments and Image Linearization
=========================================

A firmware file describes its loadable content as a list of segments,
each a run of bytes at a physical address. The bootloader, on the other
hand, is fed one contiguous buffer starting at the flash base address.
This module turns the former into the latter.

Linearization Rules
-------------------
- Segments are consumed in the order given; they are never sorted.
- Each segment must start exactly where the previous one ended (the
  first one exactly at the base address).
- A segment that starts too early raises OutOfOrderSegmentsError.
- A segment that starts too late raises NonContiguousSegmentsError;
  gaps are never filled.
- The result is padded with 0xFF (erased flash) to a multiple of 8 bytes,
  the payload size of one CAN frame.
"""

import logging
from dataclasses import dataclass
from typing import Final, Iterable

from stm32_can_loader.config import FLASH_BASE_ADDRESS
from stm32_can_loader.errors import (
    NonContiguousSegmentsError,
    OutOfOrderSegmentsError,
)

logger = logging.getLogger(__name__)


# Bootloader write granularity (one CAN frame of data)
WRITE_GRANULARITY: Final[int] = 8

# Value of erased flash, used to pad the image tail
PAD_BYTE: Final[int] = 0xFF


@dataclass(frozen=True)
class Segment:
    """
    A run of bytes destined for a physical address.

    Attributes:
        address: Physical (load) address of the first byte
        data: Segment content
    """

    address: int
    data: bytes

    @property
    def end(self) -> int:
        """Address one past the last byte of the segment."""
        return self.address + len(self.data)

    def __repr__(self) -> str:
        return f"Segment(address=0x{self.address:08X}, len={len(self.data)})"


@dataclass(frozen=True)
class Image:
    """
    Contiguous, padded flash image.

    Attributes:
        base_address: Flash address of data[0]
        data: Bytes to write; length is always a multiple of 8
    """

    base_address: int
    data: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.data, bytes):
            raise TypeError(f"Data must be bytes, got {type(self.data).__name__}")
        if len(self.data) % WRITE_GRANULARITY:
            raise ValueError(
                f"Image length {len(self.data)} is not a multiple of "
                f"{WRITE_GRANULARITY}"
            )

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return f"Image(base=0x{self.base_address:08X}, len={len(self.data)})"


def pad_to_granularity(data: bytes) -> bytes:
    """Pad data with 0xFF up to the next multiple of WRITE_GRANULARITY."""
    remainder = len(data) % WRITE_GRANULARITY
    if remainder == 0:
        return bytes(data)
    return bytes(data) + bytes([PAD_BYTE]) * (WRITE_GRANULARITY - remainder)


def linearize(
    segments: Iterable[Segment],
    base_address: int = FLASH_BASE_ADDRESS,
) -> Image:
    """
    Merge ordered segments into one contiguous image at base_address.

    Args:
        segments: Segments in file order.
        base_address: Address the first segment must start at.

    Returns:
        Image whose data is the concatenation of all segments, padded
        with 0xFF to a multiple of 8 bytes.

    Raises:
        OutOfOrderSegmentsError: If a segment starts before the current end.
        NonContiguousSegmentsError: If a segment leaves a gap.
    """
    buffer = bytearray()
    end = base_address
    for segment in segments:
        gap = segment.address - end
        if gap < 0:
            raise OutOfOrderSegmentsError(segment.address, end)
        if gap > 0:
            raise NonContiguousSegmentsError(segment.address, end)
        buffer.extend(segment.data)
        end = segment.end
        logger.debug("Appended %r, image now %d bytes", segment, len(buffer))

    image = Image(base_address, pad_to_granularity(bytes(buffer)))
    logger.info(
        "Linearized image: %d bytes at 0x%08X (%d bytes of padding)",
        len(image), base_address, len(image) - len(buffer),
    )
    return image
