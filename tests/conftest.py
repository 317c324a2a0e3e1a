"""
Shared Test Fixtures
====================

Fixtures built on the fake transports in fakes.py.
"""

import pytest

from fakes import SimulatedBootloader


@pytest.fixture
def bootloader() -> SimulatedBootloader:
    """A cooperative simulated bootloader."""
    return SimulatedBootloader()


@pytest.fixture
def sample_firmware() -> bytes:
    """300 bytes of firmware: spans two chunks and needs padding."""
    return bytes((i * 7 + 3) & 0xFF for i in range(300))
