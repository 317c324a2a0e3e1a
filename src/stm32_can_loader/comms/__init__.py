"""
CAN Communication
=================

- **transport**: the Transport contract and the Frame type
- **canbus**: python-can implementation (SocketCAN by default)

The CAN interface must be configured (bitrate, link up) before use:

    sudo ip link set can0 up type can bitrate 125000
"""

from stm32_can_loader.comms.transport import Frame, Transport
from stm32_can_loader.comms.canbus import (
    ACCEPT_ALL_FILTERS,
    SEND_TIMEOUT,
    CanTransport,
)

__all__ = [
    "Frame",
    "Transport",
    "ACCEPT_ALL_FILTERS",
    "SEND_TIMEOUT",
    "CanTransport",
]
