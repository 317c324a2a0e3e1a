"""
Plan Execution Engine
=====================

This module drives a command plan against a CAN transport. It is a
single-owner state machine: one engine instance per flash operation owns
the cursor, the retry budget and the armed timer, and only its own event
handlers mutate them.

State Machine
-------------

    IDLE ──advance()──> SENDING ──Rx step──> AWAITING_RESPONSE
                          ^                        │
                          └──── match / retry ─────┘
                                                   │
                              COMPLETED <── end ───┤
                              FAILED <── fatal ────┘

- Tx steps are sent immediately and the cursor moves on.
- An Rx step arms a timer (at most one is ever armed) and suspends until
  an event arrives.
- A received frame satisfies the pending step only if its identifier and
  data match exactly, length included. Anything else is discarded: the
  protocol has exactly one outstanding request at a time.
- On timer expiry, a retryable step with budget left rewinds the cursor
  by its retry jump (re-sending the request); otherwise the engine fails.
- COMPLETED and FAILED are absorbing. The transport is stopped on entry
  to either.

Events
------
Frame delivery and timer expiry are the only event sources. run() pulls
both from a single place (transport.recv() bounded by the armed deadline),
so they are serialized onto the calling thread. handle() can be driven
directly with Event objects, which is how the tests exercise the engine.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from stm32_can_loader.comms.transport import Frame, Transport
from stm32_can_loader.config import DEFAULT_ATTEMPTS
from stm32_can_loader.errors import CommsError, StepTimeoutError, TransportError
from stm32_can_loader.protocol.plan import Phase, Plan, RxStep

logger = logging.getLogger(__name__)


# =============================================================================
# States and Events
# =============================================================================

class EngineState(Enum):
    """Execution engine states."""

    IDLE = "idle"
    SENDING = "sending"
    AWAITING_RESPONSE = "awaiting response"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (EngineState.COMPLETED, EngineState.FAILED)


class EventKind(Enum):
    FRAME_RECEIVED = "frame received"
    TIMER_EXPIRED = "timer expired"


@dataclass(frozen=True)
class Event:
    """
    Input to the state machine.

    Attributes:
        kind: What happened
        frame: The received frame (FRAME_RECEIVED only)
    """

    kind: EventKind
    frame: Optional[Frame] = None

    @classmethod
    def frame_received(cls, frame: Frame) -> "Event":
        return cls(EventKind.FRAME_RECEIVED, frame)

    @classmethod
    def timer_expired(cls) -> "Event":
        return cls(EventKind.TIMER_EXPIRED)


class EngineListener:
    """
    Passive observer of engine progress.

    Subclass and override the hooks of interest; the defaults do nothing.
    Listeners must not call back into the engine.
    """

    def on_progress(self, completed: int, total: int) -> None:
        """Called after each completed step with the new cursor position."""

    def on_state(self, state: EngineState) -> None:
        """Called on every state transition."""


# =============================================================================
# Engine
# =============================================================================

class ExecutionEngine:
    """
    Executes one plan against one transport.

    Usage:
        engine = ExecutionEngine(plan, transport, attempts=10)
        engine.add_listener(my_progress_listener)
        with transport:
            engine.run()   # raises FlashError / TransportError on failure

    Args:
        plan: Plan to execute.
        transport: Started transport; owned by the engine until it stops.
        attempts: Number of timeouts that may be retried over the whole plan.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        plan: Plan,
        transport: Transport,
        attempts: int = DEFAULT_ATTEMPTS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if attempts < 0:
            raise ValueError(f"Attempts must be non-negative, got {attempts}")
        self.plan = plan
        self.transport = transport
        self._clock = clock
        self._cursor = 0
        self._attempts_remaining = attempts
        self._deadline: Optional[float] = None
        self._state = EngineState.IDLE
        self._phase: Optional[Phase] = None
        self._failure: Optional[CommsError] = None
        self._listeners: list[EngineListener] = []

    @property
    def cursor(self) -> int:
        """Index of the next step to execute."""
        return self._cursor

    @property
    def attempts_remaining(self) -> int:
        return self._attempts_remaining

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def deadline(self) -> Optional[float]:
        """Clock value at which the armed timer expires, or None."""
        return self._deadline

    @property
    def finished(self) -> bool:
        return self._state.terminal

    @property
    def failure(self) -> Optional[CommsError]:
        """The error that moved the engine to FAILED, if any."""
        return self._failure

    def add_listener(self, listener: EngineListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EngineListener) -> None:
        self._listeners.remove(listener)

    # -------------------------------------------------------------------------
    # Driving the Plan
    # -------------------------------------------------------------------------

    def run(self) -> None:
        """
        Execute the whole plan, blocking until it completes or fails.

        Raises:
            StepTimeoutError: If a response never arrived.
            TransportError: If the transport failed.
            RuntimeError: If the engine has already been started.
        """
        if self._state is not EngineState.IDLE:
            raise RuntimeError(f"Engine already started (state: {self._state.value})")

        logger.info("Executing plan: %d steps", len(self.plan))
        self.advance()

        while not self.finished:
            try:
                event = self._next_event()
            except TransportError as e:
                self._fail(e)
                break
            self.handle(event)

        if self._state is EngineState.FAILED:
            raise self._failure

    def advance(self) -> None:
        """
        Execute steps from the cursor until an Rx step or the end of the plan.

        Tx steps are sent immediately. On an Rx step a fresh timer is armed
        and the engine suspends in AWAITING_RESPONSE.
        """
        if self.finished:
            return

        while self._cursor < len(self.plan):
            step = self.plan[self._cursor]
            self._enter_phase(step.phase)

            if isinstance(step, RxStep):
                self._arm(step)
                self._set_state(EngineState.AWAITING_RESPONSE)
                return

            self._set_state(EngineState.SENDING)
            logger.debug("TX step %d: %r", self._cursor, step)
            try:
                self.transport.send(step.frame_id, step.payload)
            except TransportError as e:
                self._fail(e)
                return
            self._cursor += 1
            self._notify_progress()

        self._complete()

    def handle(self, event: Event) -> None:
        """
        Process one event.

        Events arriving after a terminal state are ignored.
        """
        if self.finished:
            logger.debug("Ignoring %s after %s", event.kind.value, self._state.value)
            return

        if event.kind is EventKind.FRAME_RECEIVED:
            self._on_frame(event.frame)
        else:
            self._on_timer_expired()

    # -------------------------------------------------------------------------
    # Event Handlers
    # -------------------------------------------------------------------------

    def _on_frame(self, frame: Frame) -> None:
        if self._state is not EngineState.AWAITING_RESPONSE:
            logger.debug("Discarding unsolicited %r", frame)
            return

        step = self.plan[self._cursor]
        if not step.matches(frame.frame_id, frame.data):
            logger.debug("Discarding %r while waiting for %r", frame, step)
            return

        logger.debug("RX step %d: %r", self._cursor, frame)
        self._disarm()
        self._cursor += 1
        self._notify_progress()

        if self._cursor >= len(self.plan):
            self._complete()
        else:
            self.advance()

    def _on_timer_expired(self) -> None:
        if self._state is not EngineState.AWAITING_RESPONSE:
            return

        step = self.plan[self._cursor]
        self._disarm()

        if step.retryable and self._attempts_remaining > 0:
            self._attempts_remaining -= 1
            target = self._cursor + step.retry_jump
            logger.warning(
                "Timeout at step %d (%s), retrying from step %d "
                "(%d attempts left)",
                self._cursor, step.message, target, self._attempts_remaining,
            )
            self._cursor = target
            self.advance()
            return

        if step.retryable:
            logger.error("Retry budget exhausted at step %d", self._cursor)
        self._fail(StepTimeoutError(step.message, self._cursor))

    def _next_event(self) -> Event:
        """Wait for the next frame, bounded by the armed deadline."""
        remaining = self._deadline - self._clock()
        if remaining <= 0:
            return Event.timer_expired()

        frame = self.transport.recv(remaining)
        if frame is None:
            return Event.timer_expired()
        return Event.frame_received(frame)

    # -------------------------------------------------------------------------
    # Timer
    # -------------------------------------------------------------------------

    def _arm(self, step: RxStep) -> None:
        if self._deadline is not None:
            self._disarm()
        self._deadline = self._clock() + step.timeout_ms / 1000.0
        logger.debug(
            "Waiting %d ms at step %d for %r",
            step.timeout_ms, self._cursor, step,
        )

    def _disarm(self) -> None:
        self._deadline = None

    # -------------------------------------------------------------------------
    # Terminal Transitions
    # -------------------------------------------------------------------------

    def _complete(self) -> None:
        self._disarm()
        self._set_state(EngineState.COMPLETED)
        self.transport.stop()
        logger.info("Plan complete")

    def _fail(self, error: CommsError) -> None:
        self._disarm()
        self._failure = error
        self._set_state(EngineState.FAILED)
        self.transport.stop()
        logger.error("Flash failed at step %d: %s", self._cursor, error)

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def _enter_phase(self, phase: Phase) -> None:
        if phase is not self._phase:
            self._phase = phase
            logger.info("Phase: %s", phase.value)

    def _set_state(self, state: EngineState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in self._listeners:
            listener.on_state(state)

    def _notify_progress(self) -> None:
        for listener in self._listeners:
            listener.on_progress(self._cursor, len(self.plan))
