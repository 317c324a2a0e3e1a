"""
Firmware Image Handling
=======================

- **segments**: Segment/Image model and the linearizer
- **loaders**: ELF, Intel HEX and raw binary readers
"""

from stm32_can_loader.image.segments import (
    PAD_BYTE,
    WRITE_GRANULARITY,
    Image,
    Segment,
    linearize,
    pad_to_granularity,
)
from stm32_can_loader.image.loaders import (
    HEX_FILE_EXTENSIONS,
    load_segments,
    parse_elf_segments,
    parse_hex_segments,
)

__all__ = [
    "PAD_BYTE",
    "WRITE_GRANULARITY",
    "Image",
    "Segment",
    "linearize",
    "pad_to_granularity",
    "HEX_FILE_EXTENSIONS",
    "load_segments",
    "parse_elf_segments",
    "parse_hex_segments",
]
