"""
Command Plan Builder
====================

This module compiles a linear flash image into the complete, ordered list
of CAN frames to send and responses to expect when talking to the STM32
CAN bootloader (AN3154 command set).

Plan Structure
--------------
A plan is built in five phases, always in this order:

    CONNECT   Tx 0x79 []            Rx 0x79 [79]           (retry)
    ERASE     Tx 0x43 [FF]          Rx 0x43 [79] x2        (retry)
    PROGRAM   per 256-byte chunk:
                Tx 0x31 [A3 A2 A1 A0 L-1]  Rx 0x31 [79]    (retry)
                per 8 bytes: Tx 0x04 [data]  Rx 0x31 [79]  (fatal)
                Rx 0x31 [79]                               (fatal)
    VERIFY    per 256-byte chunk:
                Tx 0x11 [A3 A2 A1 A0 L-1]  Rx 0x11 [79]    (retry)
                per 8 bytes: Rx 0x11 [data echoed]         (fatal)
                Rx 0x11 [79]                               (fatal)
    JUMP      Tx 0x21 [A3 A2 A1 A0] Rx 0x21 [79]           (retry)

The erase command answers twice: once when the command is accepted and
once when the mass erase has finished.

Retry Policy
------------
Every expected response carries an explicit RetryPolicy. A retryable step
rewinds the cursor by its (negative) retry_jump, which re-sends the
request that solicited it. Acknowledgments of individual data frames and
verify echoes are FATAL: the bootloader cannot resynchronize in the
middle of a chunk.

The plan is a pure function of the image; building it performs no I/O.
"""

import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Final, Iterator, Sequence, Union

from stm32_can_loader.image.segments import WRITE_GRANULARITY, Image

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol Constants
# =============================================================================

# Acknowledge byte returned by the bootloader
ACK: Final[int] = 0x79

# Command frame identifiers
CMD_CONNECT: Final[int] = 0x79
CMD_ERASE: Final[int] = 0x43
CMD_WRITE_MEMORY: Final[int] = 0x31
CMD_WRITE_DATA: Final[int] = 0x04
CMD_READ_MEMORY: Final[int] = 0x11
CMD_GO: Final[int] = 0x21

# Global (mass) erase selector for the erase command
GLOBAL_ERASE: Final[int] = 0xFF

# Maximum data payload of a classic CAN frame
MAX_FRAME_PAYLOAD: Final[int] = 8

# Highest standard (11-bit) CAN identifier
MAX_STANDARD_ID: Final[int] = 0x7FF

# Address range covered by one write/read memory command
CHUNK_SIZE: Final[int] = 256

# Data carried by one data frame
SUB_CHUNK_SIZE: Final[int] = WRITE_GRANULARITY

# Response timeouts
SHORT_TIMEOUT_MS: Final[int] = 100
LONG_TIMEOUT_MS: Final[int] = 1000

# Default rewind applied by retryable steps: back to the preceding step
PRIOR_STEP: Final[int] = -1


# =============================================================================
# Step Types
# =============================================================================

class Phase(Enum):
    """Plan phases, in execution order."""

    CONNECT = "connect"
    ERASE = "erase"
    PROGRAM = "program"
    VERIFY = "verify"
    JUMP = "jump"


class RetryPolicy(Enum):
    """What to do when an expected response does not arrive in time."""

    # Rewind by retry_jump and re-send, consuming one attempt
    RETRY_FROM_PRIOR_SEND = "retry"

    # Abort the flash operation
    FATAL = "fatal"


@dataclass(frozen=True)
class TxStep:
    """
    A frame to send.

    Attributes:
        frame_id: Standard CAN identifier (the bootloader command)
        payload: Frame data, at most 8 bytes
        phase: Plan phase the step belongs to
    """

    frame_id: int
    payload: bytes
    phase: Phase

    def __post_init__(self) -> None:
        if not 0 <= self.frame_id <= MAX_STANDARD_ID:
            raise ValueError(f"Invalid CAN identifier: 0x{self.frame_id:X}")
        if len(self.payload) > MAX_FRAME_PAYLOAD:
            raise ValueError(
                f"Payload too large: {len(self.payload)} bytes, "
                f"max {MAX_FRAME_PAYLOAD}"
            )

    def __repr__(self) -> str:
        return f"Tx(0x{self.frame_id:02X}, [{self.payload.hex(' ')}])"


@dataclass(frozen=True)
class RxStep:
    """
    A frame to wait for.

    Attributes:
        frame_id: Expected CAN identifier
        expected: Expected data, compared byte-for-byte including length
        timeout_ms: How long to wait before the timeout policy applies
        message: Diagnostic reported if the step fails
        phase: Plan phase the step belongs to
        retry: Timeout policy
        retry_jump: Cursor offset applied on retry (strictly negative)
    """

    frame_id: int
    expected: bytes
    timeout_ms: int
    message: str
    phase: Phase
    retry: RetryPolicy = RetryPolicy.FATAL
    retry_jump: int = PRIOR_STEP

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError(f"Timeout must be positive, got {self.timeout_ms}")
        if self.retry_jump >= 0:
            raise ValueError(f"Retry jump must be negative, got {self.retry_jump}")

    @property
    def retryable(self) -> bool:
        """Return True if a timeout on this step may be retried."""
        return self.retry is RetryPolicy.RETRY_FROM_PRIOR_SEND

    def matches(self, frame_id: int, data: bytes) -> bool:
        """Return True if a received frame satisfies this expectation."""
        return frame_id == self.frame_id and bytes(data) == self.expected

    def __repr__(self) -> str:
        return (
            f"Rx(0x{self.frame_id:02X}, [{self.expected.hex(' ')}], "
            f"{self.timeout_ms}ms, {self.retry.value})"
        )


PlanStep = Union[TxStep, RxStep]


# =============================================================================
# Plan
# =============================================================================

class Plan:
    """
    Immutable, ordered sequence of plan steps.

    Construction checks that every retryable step rewinds to a valid,
    earlier index.
    """

    def __init__(self, steps: Sequence[PlanStep]):
        self._steps: tuple[PlanStep, ...] = tuple(steps)
        for index, step in enumerate(self._steps):
            if isinstance(step, RxStep) and step.retryable:
                if index + step.retry_jump < 0:
                    raise ValueError(
                        f"Step {index} retries to index {index + step.retry_jump}"
                    )

    @property
    def steps(self) -> tuple[PlanStep, ...]:
        return self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def __getitem__(self, index: int) -> PlanStep:
        return self._steps[index]

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self._steps)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Plan):
            return NotImplemented
        return self._steps == other._steps

    def phase(self, phase: Phase) -> list[PlanStep]:
        """Return the steps of one phase, in order."""
        return [step for step in self._steps if step.phase is phase]

    def __repr__(self) -> str:
        return f"Plan({len(self._steps)} steps)"


# =============================================================================
# Builder
# =============================================================================

def encode_memory_header(address: int, length: int) -> bytes:
    """
    Encode the payload of a write/read memory command.

    Returns:
        4-byte big-endian address followed by length - 1.
    """
    if not 1 <= length <= CHUNK_SIZE:
        raise ValueError(f"Chunk length must be 1-{CHUNK_SIZE}, got {length}")
    return struct.pack(">IB", address, length - 1)


def count_steps(image_length: int) -> int:
    """
    Number of steps in the plan for an image of the given length.

    Connect (2) + erase (3) + jump (2), plus per chunk 3 header/footer
    steps in each of program and verify, plus 2 program steps and 1 verify
    step per 8-byte sub-chunk.
    """
    chunks = -(-image_length // CHUNK_SIZE)
    sub_chunks = image_length // SUB_CHUNK_SIZE
    return 7 + 6 * chunks + 3 * sub_chunks


class PlanBuilder:
    """
    Builds the command plan for one image.

    Example:
        image = linearize(segments)
        plan = PlanBuilder(image).build()
    """

    def __init__(self, image: Image):
        self.image = image
        self._steps: list[PlanStep] = []

    def build(self) -> Plan:
        """Compile every phase and return the finished plan."""
        self._steps = []
        self._connect()
        self._erase()
        self._program()
        self._verify()
        self._jump()

        plan = Plan(self._steps)
        logger.info(
            "Built plan: %d steps for %d bytes at 0x%08X",
            len(plan), len(self.image), self.image.base_address,
        )
        for phase in Phase:
            logger.debug("  %s: %d steps", phase.value, len(plan.phase(phase)))
        return plan

    # -------------------------------------------------------------------------
    # Step Helpers
    # -------------------------------------------------------------------------

    def _tx(self, phase: Phase, frame_id: int, payload: bytes = b"") -> None:
        self._steps.append(TxStep(frame_id, bytes(payload), phase))

    def _rx(
        self,
        phase: Phase,
        frame_id: int,
        expected: bytes,
        timeout_ms: int,
        message: str,
        retry: RetryPolicy = RetryPolicy.FATAL,
    ) -> None:
        self._steps.append(
            RxStep(frame_id, bytes(expected), timeout_ms, message, phase, retry)
        )

    def _ack(
        self,
        phase: Phase,
        frame_id: int,
        timeout_ms: int,
        message: str,
        retry: RetryPolicy = RetryPolicy.FATAL,
    ) -> None:
        self._rx(phase, frame_id, bytes([ACK]), timeout_ms, message, retry)

    def _chunks(self) -> Iterator[tuple[int, bytes]]:
        """Yield (address, data) for each 256-byte chunk of the image."""
        data = self.image.data
        for offset in range(0, len(data), CHUNK_SIZE):
            yield self.image.base_address + offset, data[offset:offset + CHUNK_SIZE]

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _connect(self) -> None:
        self._tx(Phase.CONNECT, CMD_CONNECT)
        self._ack(
            Phase.CONNECT, CMD_CONNECT, SHORT_TIMEOUT_MS,
            "Error connecting to bootloader",
            RetryPolicy.RETRY_FROM_PRIOR_SEND,
        )

    def _erase(self) -> None:
        self._tx(Phase.ERASE, CMD_ERASE, bytes([GLOBAL_ERASE]))
        self._ack(
            Phase.ERASE, CMD_ERASE, LONG_TIMEOUT_MS,
            "Error while erasing (first ACK not received)",
            RetryPolicy.RETRY_FROM_PRIOR_SEND,
        )
        self._ack(
            Phase.ERASE, CMD_ERASE, LONG_TIMEOUT_MS,
            "Error while erasing (second ACK not received)",
            RetryPolicy.RETRY_FROM_PRIOR_SEND,
        )

    def _program(self) -> None:
        for address, chunk in self._chunks():
            self._tx(Phase.PROGRAM, CMD_WRITE_MEMORY, encode_memory_header(address, len(chunk)))
            self._ack(
                Phase.PROGRAM, CMD_WRITE_MEMORY, LONG_TIMEOUT_MS,
                f"Error uploading {len(chunk)} bytes to 0x{address:08x}",
                RetryPolicy.RETRY_FROM_PRIOR_SEND,
            )
            for offset in range(0, len(chunk), SUB_CHUNK_SIZE):
                self._tx(Phase.PROGRAM, CMD_WRITE_DATA, chunk[offset:offset + SUB_CHUNK_SIZE])
                self._ack(
                    Phase.PROGRAM, CMD_WRITE_MEMORY, LONG_TIMEOUT_MS,
                    f"Error uploading {SUB_CHUNK_SIZE} bytes to 0x{address + offset:08x}",
                )
            self._ack(
                Phase.PROGRAM, CMD_WRITE_MEMORY, LONG_TIMEOUT_MS,
                f"Error flashing {len(chunk)} bytes to 0x{address:08x}",
            )

    def _verify(self) -> None:
        for address, chunk in self._chunks():
            self._tx(Phase.VERIFY, CMD_READ_MEMORY, encode_memory_header(address, len(chunk)))
            self._ack(
                Phase.VERIFY, CMD_READ_MEMORY, LONG_TIMEOUT_MS,
                f"Error verifying {len(chunk)} bytes at 0x{address:08x}",
                RetryPolicy.RETRY_FROM_PRIOR_SEND,
            )
            for offset in range(0, len(chunk), SUB_CHUNK_SIZE):
                # The bootloader echoes flash content; compare it exactly
                self._rx(
                    Phase.VERIFY, CMD_READ_MEMORY,
                    chunk[offset:offset + SUB_CHUNK_SIZE], LONG_TIMEOUT_MS,
                    f"Error verifying {SUB_CHUNK_SIZE} bytes at 0x{address + offset:08x}",
                )
            self._ack(
                Phase.VERIFY, CMD_READ_MEMORY, LONG_TIMEOUT_MS,
                f"Error verifying {len(chunk)} bytes at 0x{address:08x}, missing final ACK",
            )

    def _jump(self) -> None:
        self._tx(Phase.JUMP, CMD_GO, struct.pack(">I", self.image.base_address))
        self._ack(
            Phase.JUMP, CMD_GO, SHORT_TIMEOUT_MS,
            "Starting the program",
            RetryPolicy.RETRY_FROM_PRIOR_SEND,
        )


def build_plan(image: Image) -> Plan:
    """Build the complete command plan for an image."""
    return PlanBuilder(image).build()
