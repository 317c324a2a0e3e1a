"""
Tests for Firmware Image Handling
=================================

Test Categories
---------------
1. Segment/Image model: validation and helpers
2. Linearizer: concatenation, padding, ordering and gap errors
3. ELF loader: program headers, physical addresses, malformed files
4. Intel HEX and raw binary loaders
"""

import struct

import pytest
from intelhex import IntelHex

from stm32_can_loader.errors import (
    FirmwareFormatError,
    NonContiguousSegmentsError,
    OutOfOrderSegmentsError,
    PlanningError,
)
from stm32_can_loader.image import (
    PAD_BYTE,
    Image,
    Segment,
    linearize,
    load_segments,
    pad_to_granularity,
    parse_elf_segments,
)

BASE = 0x08000000


# =============================================================================
# Helpers
# =============================================================================

PT_LOAD = 1
PT_ARM_EXIDX = 0x70000001


def make_elf(program_headers: list[tuple[int, int, int, bytes]]) -> bytes:
    """
    Build a minimal little-endian ELF32 file.

    Args:
        program_headers: (p_type, p_vaddr, p_paddr, data) per header; data
            is stored after the header table.
    """
    phoff = 52
    data_offset = phoff + 32 * len(program_headers)
    ident = b"\x7fELF" + bytes([1, 1, 1]) + bytes(9)
    header = struct.pack(
        "<16sHHLLLLLHHHHHH",
        ident, 2, 40, 1, BASE, phoff, 0, 0, 52, 32, len(program_headers), 40, 0, 0,
    )

    table = bytearray()
    payload = bytearray()
    for p_type, vaddr, paddr, data in program_headers:
        offset = data_offset + len(payload)
        table += struct.pack(
            "<LLLLLLLL", p_type, offset, vaddr, paddr, len(data), len(data), 5, 4
        )
        payload += data
    return header + bytes(table) + bytes(payload)


# =============================================================================
# Model Tests
# =============================================================================

class TestModel:
    """Tests for Segment and Image."""

    def test_segment_end(self):
        assert Segment(BASE, b"abc").end == BASE + 3

    def test_image_rejects_unaligned_length(self):
        with pytest.raises(ValueError, match="multiple of 8"):
            Image(BASE, b"\x00" * 7)

    def test_image_rejects_non_bytes(self):
        with pytest.raises(TypeError):
            Image(BASE, bytearray(8))

    def test_image_length(self):
        assert len(Image(BASE, bytes(16))) == 16

    def test_pad_to_granularity(self):
        assert pad_to_granularity(b"") == b""
        assert pad_to_granularity(b"\x01") == b"\x01" + b"\xff" * 7
        assert pad_to_granularity(bytes(8)) == bytes(8)


# =============================================================================
# Linearizer Tests
# =============================================================================

class TestLinearize:
    """Tests for linearize()."""

    @pytest.mark.parametrize("length", [0, 1, 7, 8, 9, 255, 256, 257, 1000])
    def test_length_and_padding(self, length):
        """Output is ceil(L/8)*8 bytes: the data then 0xFF padding."""
        data = bytes(i & 0xFF for i in range(length))
        image = linearize([Segment(BASE, data)], BASE)
        assert len(image) == -(-length // 8) * 8
        assert image.data[:length] == data
        assert all(b == PAD_BYTE for b in image.data[length:])

    def test_concatenates_contiguous_segments(self):
        segments = [
            Segment(BASE, b"\x01\x02\x03"),
            Segment(BASE + 3, b"\x04\x05"),
            Segment(BASE + 5, b"\x06\x07\x08\x09"),
        ]
        image = linearize(segments, BASE)
        assert image.base_address == BASE
        assert image.data == bytes(range(1, 10)) + b"\xff" * 7

    def test_zero_length_segment_is_accepted(self):
        image = linearize([Segment(BASE, b""), Segment(BASE, bytes(8))], BASE)
        assert image.data == bytes(8)

    def test_empty_segment_list(self):
        assert linearize([], BASE).data == b""

    def test_gap_raises_non_contiguous(self):
        segments = [Segment(BASE, bytes(8)), Segment(BASE + 16, bytes(8))]
        with pytest.raises(NonContiguousSegmentsError) as info:
            linearize(segments, BASE)
        assert info.value.address == BASE + 16
        assert info.value.expected == BASE + 8

    def test_first_segment_above_base_is_a_gap(self):
        with pytest.raises(NonContiguousSegmentsError):
            linearize([Segment(BASE + 4, bytes(4))], BASE)

    def test_overlap_raises_out_of_order(self):
        segments = [Segment(BASE, bytes(8)), Segment(BASE + 4, bytes(8))]
        with pytest.raises(OutOfOrderSegmentsError) as info:
            linearize(segments, BASE)
        assert info.value.address == BASE + 4
        assert info.value.expected == BASE + 8

    def test_segments_are_not_sorted(self):
        """A valid layout given in reverse order is rejected, not reordered."""
        segments = [Segment(BASE + 8, bytes(8)), Segment(BASE, bytes(8))]
        with pytest.raises(PlanningError):
            linearize(segments, BASE)

    def test_custom_base_address(self):
        image = linearize([Segment(0x1000, b"\xaa" * 8)], 0x1000)
        assert image.base_address == 0x1000
        assert image.data == b"\xaa" * 8


# =============================================================================
# ELF Loader Tests
# =============================================================================

class TestElfLoader:
    """Tests for parse_elf_segments() and ELF dispatch."""

    def test_load_segments_use_physical_address(self):
        elf = make_elf([
            (PT_LOAD, BASE, BASE, b"\x01" * 16),
            # .data: runs from RAM, loaded right after .text in flash
            (PT_LOAD, 0x20000000, BASE + 16, b"\x02" * 4),
        ])
        segments = parse_elf_segments(elf)
        assert segments == [
            Segment(BASE, b"\x01" * 16),
            Segment(BASE + 16, b"\x02" * 4),
        ]

    def test_skips_empty_and_non_load_headers(self):
        elf = make_elf([
            (PT_ARM_EXIDX, BASE + 8, BASE + 8, b"\x09" * 8),
            (PT_LOAD, BASE, BASE, b"\x01" * 8),
            (PT_LOAD, 0x20000000, 0x20000000, b""),  # .bss
        ])
        assert parse_elf_segments(elf) == [Segment(BASE, b"\x01" * 8)]

    def test_keeps_file_order(self):
        elf = make_elf([
            (PT_LOAD, BASE + 8, BASE + 8, b"\x02" * 8),
            (PT_LOAD, BASE, BASE, b"\x01" * 8),
        ])
        addresses = [s.address for s in parse_elf_segments(elf)]
        assert addresses == [BASE + 8, BASE]

    def test_invalid_magic(self):
        with pytest.raises(FirmwareFormatError, match="magic"):
            parse_elf_segments(b"\x00" * 64)

    def test_too_short(self):
        with pytest.raises(FirmwareFormatError, match="too short"):
            parse_elf_segments(b"\x7fELF")

    def test_rejects_64_bit(self):
        elf = bytearray(make_elf([(PT_LOAD, BASE, BASE, bytes(8))]))
        elf[4] = 2
        with pytest.raises(FirmwareFormatError, match="32-bit"):
            parse_elf_segments(bytes(elf))

    def test_truncated_segment(self):
        elf = make_elf([(PT_LOAD, BASE, BASE, bytes(32))])
        with pytest.raises(FirmwareFormatError, match="past end"):
            parse_elf_segments(elf[:-8])

    def test_load_segments_detects_elf_by_magic(self, tmp_path):
        path = tmp_path / "firmware.out"
        path.write_bytes(make_elf([(PT_LOAD, BASE, BASE, b"\x42" * 8)]))
        assert load_segments(path) == [Segment(BASE, b"\x42" * 8)]


# =============================================================================
# HEX and Binary Loader Tests
# =============================================================================

class TestOtherLoaders:
    """Tests for Intel HEX and raw binary loading."""

    def test_intel_hex(self, tmp_path):
        ihex = IntelHex()
        ihex.puts(BASE, b"\x10\x20\x30\x40")
        ihex.puts(BASE + 0x100, b"\x50\x60")
        path = tmp_path / "firmware.hex"
        ihex.write_hex_file(str(path))

        assert load_segments(path) == [
            Segment(BASE, b"\x10\x20\x30\x40"),
            Segment(BASE + 0x100, b"\x50\x60"),
        ]

    def test_invalid_intel_hex(self, tmp_path):
        path = tmp_path / "broken.hex"
        path.write_text(":zz\n")
        with pytest.raises(FirmwareFormatError):
            load_segments(path)

    def test_binary_data_in_hex_file(self, tmp_path):
        """A .hex file that is not text is a firmware error."""
        path = tmp_path / "firmware.hex"
        path.write_bytes(b"\xff\xfe\x80\x81garbage\n")
        with pytest.raises(FirmwareFormatError, match="firmware.hex"):
            load_segments(path)

    def test_raw_binary_at_base_address(self, tmp_path):
        path = tmp_path / "firmware.bin"
        path.write_bytes(b"\x01\x02\x03")
        assert load_segments(path, 0x08004000) == [Segment(0x08004000, b"\x01\x02\x03")]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_segments(tmp_path / "missing.bin")
