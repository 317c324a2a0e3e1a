"""
Firmware File Loaders
=====================

Reads a firmware file into the list of segments the linearizer consumes.

Supported Formats
-----------------
- **ELF** (detected by its magic number): 32-bit little-endian images as
  produced by arm-none-eabi toolchains. Every PT_LOAD program header with
  file content becomes one segment at its physical (load) address, in
  file order. Section headers are ignored.
- **Intel HEX** (.hex, .ihex, .ihx): one segment per contiguous address
  range, via the intelhex package.
- **Raw binary** (anything else): one segment at the flash base address.
"""

import logging
import struct
from pathlib import Path
from typing import Final, Union

from intelhex import IntelHex, IntelHexError

from stm32_can_loader.config import FLASH_BASE_ADDRESS
from stm32_can_loader.errors import FirmwareFormatError
from stm32_can_loader.image.segments import Segment

logger = logging.getLogger(__name__)


# =============================================================================
# ELF Constants
# =============================================================================

ELF_MAGIC: Final[bytes] = b"\x7fELF"

ELF_CLASS_32: Final[int] = 1
ELF_DATA_LSB: Final[int] = 1

# e_ident + e_type ... e_shstrndx
ELF_HEADER_FORMAT: Final[str] = "<16sHHLLLLLHHHHHH"
ELF_HEADER_SIZE: Final[int] = struct.calcsize(ELF_HEADER_FORMAT)

# p_type, p_offset, p_vaddr, p_paddr, p_filesz, p_memsz, p_flags, p_align
PROGRAM_HEADER_FORMAT: Final[str] = "<LLLLLLLL"
PROGRAM_HEADER_SIZE: Final[int] = struct.calcsize(PROGRAM_HEADER_FORMAT)

PT_LOAD: Final[int] = 1

HEX_FILE_EXTENSIONS: Final[tuple[str, ...]] = (".hex", ".ihex", ".ihx")

PathLike = Union[str, Path]


# =============================================================================
# ELF
# =============================================================================

def parse_elf_segments(data: bytes, name: str = "<input>") -> list[Segment]:
    """
    Extract loadable segments from an ELF32 image.

    Args:
        data: Complete ELF file content.
        name: File name used in error messages.

    Returns:
        Segments of every PT_LOAD program header with p_filesz > 0,
        in program header order.

    Raises:
        FirmwareFormatError: If the file is not a valid little-endian
            ELF32 file or is truncated.
    """
    if len(data) < ELF_HEADER_SIZE:
        raise FirmwareFormatError(f"{name}: file too short for an ELF header")

    (ident, _type, _machine, _version, _entry, phoff, _shoff, _flags,
     _ehsize, phentsize, phnum, _shentsize, _shnum,
     _shstrndx) = struct.unpack_from(ELF_HEADER_FORMAT, data)

    if ident[:4] != ELF_MAGIC:
        raise FirmwareFormatError(f"{name}: invalid ELF magic header")
    if ident[4] != ELF_CLASS_32:
        raise FirmwareFormatError(f"{name}: only 32-bit ELF files are supported")
    if ident[5] != ELF_DATA_LSB:
        raise FirmwareFormatError(f"{name}: only little-endian ELF files are supported")
    if phnum and phentsize != PROGRAM_HEADER_SIZE:
        raise FirmwareFormatError(
            f"{name}: unexpected program header entry size 0x{phentsize:X} "
            f"(not 0x{PROGRAM_HEADER_SIZE:X})"
        )
    if phoff + phnum * PROGRAM_HEADER_SIZE > len(data):
        raise FirmwareFormatError(f"{name}: program header table is truncated")

    segments = []
    for index in range(phnum):
        (p_type, p_offset, _vaddr, p_paddr, p_filesz, _memsz, _flags,
         _align) = struct.unpack_from(
            PROGRAM_HEADER_FORMAT, data, phoff + index * PROGRAM_HEADER_SIZE
        )
        if p_type != PT_LOAD or p_filesz == 0:
            continue
        if p_offset + p_filesz > len(data):
            raise FirmwareFormatError(
                f"{name}: segment {index} extends past end of file"
            )
        segment = Segment(p_paddr, bytes(data[p_offset:p_offset + p_filesz]))
        logger.debug("ELF program header %d: %r", index, segment)
        segments.append(segment)

    return segments


# =============================================================================
# Intel HEX
# =============================================================================

def parse_hex_segments(path: PathLike) -> list[Segment]:
    """
    Extract contiguous address ranges from an Intel HEX file.

    Raises:
        FirmwareFormatError: If the file is not valid Intel HEX.
    """
    try:
        ihex = IntelHex(str(path))
    except (IntelHexError, UnicodeDecodeError, ValueError) as e:
        # IntelHex reads in text mode: binary garbage fails to decode
        raise FirmwareFormatError(f"{path}: {e}") from e

    segments = []
    for start, stop in ihex.segments():
        segments.append(Segment(start, ihex.tobinstr(start=start, size=stop - start)))
    return segments


# =============================================================================
# Dispatch
# =============================================================================

def load_segments(
    path: PathLike,
    base_address: int = FLASH_BASE_ADDRESS,
) -> list[Segment]:
    """
    Read a firmware file into segments.

    Args:
        path: ELF, Intel HEX or raw binary file.
        base_address: Load address of a raw binary file.

    Returns:
        Segments in file order.

    Raises:
        FirmwareFormatError: If the file content is invalid.
        OSError: If the file cannot be read.
    """
    path = Path(path)

    if path.suffix.lower() in HEX_FILE_EXTENSIONS:
        logger.info("Loading %s as Intel HEX", path.name)
        segments = parse_hex_segments(path)
    else:
        data = path.read_bytes()
        if data[:4] == ELF_MAGIC:
            logger.info("Loading %s as ELF", path.name)
            segments = parse_elf_segments(data, path.name)
        else:
            logger.info("Loading %s as raw binary at 0x%08X", path.name, base_address)
            segments = [Segment(base_address, data)]

    logger.info(
        "Loaded %d segment(s), %d bytes",
        len(segments), sum(len(s.data) for s in segments),
    )
    return segments
