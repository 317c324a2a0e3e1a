"""
Transport Abstraction
=====================

The execution engine only needs four things from a bus: send a frame,
wait for the next received frame, and an explicit start/stop lifecycle.
This module defines that contract and the transport-neutral Frame type.

A transport is owned by exactly one engine while a plan executes; nothing
else may send or receive on it concurrently.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Frame:
    """
    A received or transmitted CAN frame.

    Attributes:
        frame_id: Arbitration identifier
        data: Frame payload (0-8 bytes)
    """

    frame_id: int
    data: bytes

    def __repr__(self) -> str:
        return f"Frame(0x{self.frame_id:03X}, [{self.data.hex(' ')}])"


class Transport(ABC):
    """
    Frame-oriented, half-duplex bus used by the execution engine.

    Implementations must make stop() idempotent and safe to call before
    start(). Use as a context manager to guarantee stop() on every exit
    path:

        with transport:
            transport.send(0x79, b"")
            frame = transport.recv(0.1)
    """

    @abstractmethod
    def start(self) -> None:
        """Open the bus and begin receiving frames."""

    @abstractmethod
    def stop(self) -> None:
        """Stop receiving and release the bus."""

    @abstractmethod
    def send(self, frame_id: int, payload: bytes) -> None:
        """
        Transmit one frame.

        Raises:
            TransportError: If the bus is not started or the send fails.
        """

    @abstractmethod
    def recv(self, timeout: float) -> Optional[Frame]:
        """
        Wait up to timeout seconds for the next received frame.

        Returns:
            The frame, or None if nothing arrived in time.
        """

    def __enter__(self) -> "Transport":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.stop()
