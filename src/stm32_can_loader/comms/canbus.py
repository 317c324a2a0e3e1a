"""
CAN Bus Transport
=================

python-can implementation of the Transport contract, used to talk to
the STM32 bootloader over SocketCAN (or any other python-can interface).

Bus Setup
---------
The CAN interface itself (bitrate, link state) must be configured before
the loader runs, e.g. on Linux:

    sudo ip link set can0 up type can bitrate 125000

On start() the transport:
- opens the bus without receiving its own frames
- disables local loopback on SocketCAN, so other sockets on this host
  do not see the loader's requests
- installs an accept-all receive filter (id 0, mask 0)
- attaches a Notifier that queues received frames in a BufferedReader

The Notifier thread only enqueues frames. Frames are dequeued by recv()
on the thread running the execution engine, so frame handling and timer
expiry never run concurrently.
"""

import logging
import time
from typing import Any, Final, Optional

import can

from stm32_can_loader.comms.transport import Frame, Transport
from stm32_can_loader.config import DEFAULT_DEVICE, DEFAULT_INTERFACE
from stm32_can_loader.errors import TransportError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Accept every frame: the engine discards the ones it does not expect
ACCEPT_ALL_FILTERS: Final[list[dict[str, int]]] = [{"can_id": 0x0, "can_mask": 0x0}]

# Maximum time to wait for room in the transmit queue (seconds)
SEND_TIMEOUT: Final[float] = 1.0

MAX_PAYLOAD: Final[int] = 8


class CanTransport(Transport):
    """
    Transport over a python-can bus.

    Usage:
        with CanTransport("can0") as transport:
            transport.send(0x79, b"")
            frame = transport.recv(0.1)

    Args:
        channel: CAN channel name (e.g. "can0", "vcan0").
        interface: python-can interface type (default "socketcan").
        **bus_kwargs: Extra arguments for can.Bus (e.g. bitrate).
    """

    def __init__(
        self,
        channel: str = DEFAULT_DEVICE,
        interface: str = DEFAULT_INTERFACE,
        **bus_kwargs: Any,
    ):
        self.channel = channel
        self.interface = interface
        self._bus_kwargs = bus_kwargs
        self._bus: Optional[can.BusABC] = None
        self._reader: Optional[can.BufferedReader] = None
        self._notifier: Optional[can.Notifier] = None

    @property
    def started(self) -> bool:
        """Return True between start() and stop()."""
        return self._bus is not None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """
        Open the bus, install filters and start receiving.

        Calling start() on a started transport does nothing.

        Raises:
            TransportError: If the interface does not exist or is down.
        """
        if self._bus is not None:
            return

        kwargs = dict(self._bus_kwargs)
        if self.interface == "socketcan":
            kwargs.setdefault("local_loopback", False)

        logger.info("Opening CAN channel %s (%s)", self.channel, self.interface)
        try:
            bus = can.Bus(
                interface=self.interface,
                channel=self.channel,
                receive_own_messages=False,
                **kwargs,
            )
        except (can.CanError, OSError) as e:
            raise TransportError(
                f"Cannot open CAN channel {self.channel} ({self.interface}): {e}. "
                f"Make sure the interface exists and is up, e.g. "
                f"'ip link set {self.channel} up type can bitrate 125000'"
            ) from e

        try:
            bus.set_filters(ACCEPT_ALL_FILTERS)
            reader = can.BufferedReader()
            notifier = can.Notifier(bus, [reader])
        except (can.CanError, OSError) as e:
            bus.shutdown()
            raise TransportError(f"Cannot configure CAN channel {self.channel}: {e}") from e

        self._bus = bus
        self._reader = reader
        self._notifier = notifier
        logger.debug("CAN channel %s started", self.channel)

    def stop(self) -> None:
        """
        Stop receiving and shut the bus down.

        Safe to call more than once and before start(). Errors during
        shutdown are logged, not raised.
        """
        if self._bus is None:
            return

        if self._notifier is not None:
            try:
                self._notifier.stop()
            except Exception as e:
                logger.warning("Error stopping CAN notifier: %s", e)

        try:
            self._bus.shutdown()
            logger.debug("CAN channel %s stopped", self.channel)
        except Exception as e:
            logger.warning("Error shutting down CAN channel %s: %s", self.channel, e)

        self._bus = None
        self._reader = None
        self._notifier = None

    # -------------------------------------------------------------------------
    # Frame I/O
    # -------------------------------------------------------------------------

    def send(self, frame_id: int, payload: bytes) -> None:
        """
        Send a standard (11-bit) data frame.

        Raises:
            ValueError: If the payload exceeds 8 bytes.
            TransportError: If the transport is not started or the send fails.
        """
        if len(payload) > MAX_PAYLOAD:
            raise ValueError(
                f"Payload too large: {len(payload)} bytes, maximum {MAX_PAYLOAD}"
            )
        if self._bus is None:
            raise TransportError("CAN transport is not started")

        message = can.Message(
            arbitration_id=frame_id,
            data=bytes(payload),
            is_extended_id=False,
        )
        try:
            self._bus.send(message, timeout=SEND_TIMEOUT)
        except can.CanError as e:
            raise TransportError(
                f"Error sending frame 0x{frame_id:03X} on {self.channel}: {e}"
            ) from e
        logger.debug("CAN TX: 0x%03X [%s]", frame_id, bytes(payload).hex(" "))

    def recv(self, timeout: float) -> Optional[Frame]:
        """
        Wait up to timeout seconds for the next data frame.

        Error frames and remote frames are skipped.

        Raises:
            TransportError: If the transport is not started.
        """
        if self._reader is None:
            raise TransportError("CAN transport is not started")

        deadline = time.monotonic() + timeout
        while True:
            remaining = max(deadline - time.monotonic(), 0.0)
            message = self._reader.get_message(timeout=remaining)
            if message is None:
                return None
            if message.is_error_frame:
                logger.warning("CAN error frame received: %s", message)
                continue
            if message.is_remote_frame:
                logger.debug("Skipping remote frame: %s", message)
                continue
            frame = Frame(message.arbitration_id, bytes(message.data))
            logger.debug("CAN RX: %r", frame)
            return frame
