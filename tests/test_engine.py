"""
Tests for the Plan Execution Engine
===================================

The engine is exercised two ways:

- **Event-driven**: advance() and handle() are called directly with
  Event objects and a fake clock, checking each transition.
- **run()**: the whole plan is executed against the simulated
  bootloader from fakes.py, with lost frames injected per command.

Test Categories
---------------
1. Sending and arming the timer
2. Frame matching
3. Timeouts, retries and the shared budget
4. Terminal states and transport shutdown
5. Listeners
"""

from typing import Optional

import pytest

from fakes import RecordingTransport, SimulatedBootloader
from stm32_can_loader.comms import Frame
from stm32_can_loader.errors import StepTimeoutError, TransportError
from stm32_can_loader.image import Image
from stm32_can_loader.protocol import (
    EngineListener,
    EngineState,
    Event,
    ExecutionEngine,
    build_plan,
)

BASE = 0x08000000
DATA = bytes(range(1, 9))
ACK = b"\x79"


# =============================================================================
# Helpers
# =============================================================================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class RecordingListener(EngineListener):
    def __init__(self):
        self.progress: list[tuple[int, int]] = []
        self.states: list[EngineState] = []

    def on_progress(self, completed: int, total: int) -> None:
        self.progress.append((completed, total))

    def on_state(self, state: EngineState) -> None:
        self.states.append(state)


def make_engine(
    transport: Optional[RecordingTransport] = None,
    attempts: int = 10,
    data: bytes = DATA,
) -> ExecutionEngine:
    plan = build_plan(Image(BASE, data))
    return ExecutionEngine(
        plan,
        transport if transport is not None else RecordingTransport(),
        attempts=attempts,
        clock=FakeClock(),
    )


def received(frame_id: int, data: bytes = ACK) -> Event:
    return Event.frame_received(Frame(frame_id, data))


# =============================================================================
# Sending Tests
# =============================================================================

class TestAdvance:
    """Tests for advance() and timer arming."""

    def test_initial_state(self):
        engine = make_engine(attempts=5)
        assert engine.state is EngineState.IDLE
        assert engine.cursor == 0
        assert engine.attempts_remaining == 5
        assert engine.deadline is None

    def test_negative_attempts(self):
        with pytest.raises(ValueError):
            make_engine(attempts=-1)

    def test_sends_until_first_response(self):
        engine = make_engine()
        engine.advance()
        assert engine.transport.sent == [Frame(0x79, b"")]
        assert engine.cursor == 1
        assert engine.state is EngineState.AWAITING_RESPONSE
        assert engine.deadline == pytest.approx(0.1)

    def test_match_arms_fresh_timer(self):
        engine = make_engine()
        engine.advance()
        engine._clock.now = 0.05
        engine.handle(received(0x79))
        assert engine.transport.sent[-1] == Frame(0x43, b"\xff")
        assert engine.cursor == 3
        assert engine.deadline == pytest.approx(1.05)

    def test_consecutive_responses_need_no_send(self):
        engine = make_engine()
        engine.advance()
        engine.handle(received(0x79))
        engine.handle(received(0x43))
        assert engine.cursor == 4
        assert len(engine.transport.sent) == 2


# =============================================================================
# Matching Tests
# =============================================================================

class TestMatching:
    """Only an exact frame satisfies the pending step."""

    @pytest.mark.parametrize("frame", [
        Frame(0x43, ACK),           # wrong identifier
        Frame(0x79, b"\x1f"),       # NACK
        Frame(0x79, b"\x79\x00"),   # longer
        Frame(0x79, b""),           # shorter
    ])
    def test_non_matching_frame_is_discarded(self, frame):
        engine = make_engine()
        engine.advance()
        deadline = engine.deadline
        engine.handle(Event.frame_received(frame))
        assert engine.cursor == 1
        assert engine.state is EngineState.AWAITING_RESPONSE
        assert engine.deadline == deadline
        assert engine.transport.sent == [Frame(0x79, b"")]

    def test_single_differing_echo_byte(self):
        engine = make_engine()
        engine.advance()
        for frame_id in (0x79, 0x43, 0x43, 0x31, 0x31, 0x31, 0x11):
            engine.handle(received(frame_id))
        assert engine.cursor == 12

        engine.handle(received(0x11, DATA[:7] + b"\x00"))
        assert engine.cursor == 12
        engine.handle(received(0x11, DATA))
        assert engine.cursor == 13

    def test_frame_ignored_before_start(self):
        engine = make_engine()
        engine.handle(received(0x79))
        assert engine.state is EngineState.IDLE
        assert engine.cursor == 0


# =============================================================================
# Timeout and Retry Tests
# =============================================================================

class TestRetry:
    """Tests for timer expiry, retries and the shared budget."""

    def test_retry_resends_request(self):
        engine = make_engine()
        engine.advance()
        engine.handle(Event.timer_expired())
        assert engine.transport.sent == [Frame(0x79, b""), Frame(0x79, b"")]
        assert engine.attempts_remaining == 9
        assert engine.cursor == 1
        assert engine.state is EngineState.AWAITING_RESPONSE

    def test_second_erase_ack_rewaits_first(self):
        """The second erase ACK retries onto the first one, without a send."""
        engine = make_engine()
        engine.advance()
        engine.handle(received(0x79))
        engine.handle(received(0x43))
        engine.handle(Event.timer_expired())
        assert engine.cursor == 3
        assert engine.attempts_remaining == 9
        assert engine.transport.sent.count(Frame(0x43, b"\xff")) == 1

    def test_budget_exhausted(self):
        engine = make_engine(attempts=2)
        engine.advance()
        for _ in range(3):
            engine.handle(Event.timer_expired())

        assert engine.state is EngineState.FAILED
        assert engine.attempts_remaining == 0
        assert isinstance(engine.failure, StepTimeoutError)
        assert engine.failure.message == "Error connecting to bootloader"
        assert engine.failure.step_index == 1
        assert len(engine.transport.sent) == 3

    def test_zero_attempts_fails_on_first_timeout(self):
        engine = make_engine(attempts=0)
        engine.advance()
        engine.handle(Event.timer_expired())
        assert engine.state is EngineState.FAILED

    def test_fatal_step_does_not_consume_budget(self):
        engine = make_engine()
        engine.advance()
        for frame_id in (0x79, 0x43, 0x43, 0x31):
            engine.handle(received(frame_id))
        assert engine.cursor == 8

        engine.handle(Event.timer_expired())
        assert engine.state is EngineState.FAILED
        assert engine.attempts_remaining == 10
        assert engine.failure.message == "Error uploading 8 bytes to 0x08000000"

    def test_run_retries_lost_frames(self):
        bootloader = SimulatedBootloader(ignore={0x79: 3})
        engine = make_engine(bootloader)
        engine.run()
        assert engine.state is EngineState.COMPLETED
        assert engine.attempts_remaining == 7

    def test_run_fails_on_lost_data_ack(self):
        bootloader = SimulatedBootloader(ignore={0x04: 1})
        engine = make_engine(bootloader)
        with pytest.raises(StepTimeoutError, match="Error uploading 8 bytes to 0x08000000"):
            engine.run()
        assert engine.attempts_remaining == 10
        assert bootloader.stop_count == 1

    def test_run_fails_when_budget_runs_out(self):
        bootloader = SimulatedBootloader(ignore={0x21: 20})
        engine = make_engine(bootloader, attempts=4)
        with pytest.raises(StepTimeoutError, match="Starting the program"):
            engine.run()
        assert bootloader.sent.count(Frame(0x21, b"\x08\x00\x00\x00")) == 5


# =============================================================================
# Terminal State Tests
# =============================================================================

class TestTerminal:
    """Tests for COMPLETED/FAILED and transport shutdown."""

    def test_run_completes(self, bootloader):
        engine = make_engine(bootloader)
        engine.run()
        assert engine.state is EngineState.COMPLETED
        assert engine.cursor == len(engine.plan)
        assert engine.attempts_remaining == 10
        assert engine.deadline is None
        assert bootloader.stop_count == 1

    def test_events_after_completion_are_ignored(self, bootloader):
        engine = make_engine(bootloader)
        engine.run()
        engine.handle(received(0x79))
        engine.handle(Event.timer_expired())
        assert engine.state is EngineState.COMPLETED
        assert engine.cursor == len(engine.plan)

    def test_events_after_failure_are_ignored(self):
        engine = make_engine(attempts=0)
        engine.advance()
        engine.handle(Event.timer_expired())
        sent = list(engine.transport.sent)

        engine.handle(received(0x79))
        engine.handle(Event.timer_expired())
        assert engine.state is EngineState.FAILED
        assert engine.cursor == 1
        assert engine.transport.sent == sent

    def test_run_twice(self, bootloader):
        engine = make_engine(bootloader)
        engine.run()
        with pytest.raises(RuntimeError):
            engine.run()

    def test_send_failure(self):
        transport = RecordingTransport()
        transport.fail_send = True
        engine = make_engine(transport)
        with pytest.raises(TransportError, match="network is down"):
            engine.run()
        assert engine.state is EngineState.FAILED
        assert transport.stop_count == 1

    def test_receive_failure(self):
        class BrokenTransport(RecordingTransport):
            def recv(self, timeout):
                raise TransportError("bus off")

        transport = BrokenTransport()
        engine = make_engine(transport)
        with pytest.raises(TransportError, match="bus off"):
            engine.run()
        assert engine.state is EngineState.FAILED
        assert transport.stop_count == 1

    def test_run_with_empty_image(self, bootloader):
        engine = make_engine(bootloader, data=b"")
        engine.run()
        assert engine.state is EngineState.COMPLETED
        assert bootloader.jump_address == BASE


# =============================================================================
# Listener Tests
# =============================================================================

class TestListeners:
    """Tests for progress and state notifications."""

    def test_progress_reaches_total(self, bootloader):
        engine = make_engine(bootloader)
        listener = RecordingListener()
        engine.add_listener(listener)
        engine.run()

        total = len(engine.plan)
        assert listener.progress[0] == (1, total)
        assert listener.progress[-1] == (total, total)
        assert len(listener.progress) == total
        assert listener.states[-1] is EngineState.COMPLETED

    def test_failure_state_notified(self):
        engine = make_engine(attempts=0)
        listener = RecordingListener()
        engine.add_listener(listener)
        engine.advance()
        engine.handle(Event.timer_expired())
        assert listener.states == [
            EngineState.SENDING,
            EngineState.AWAITING_RESPONSE,
            EngineState.FAILED,
        ]

    def test_remove_listener(self, bootloader):
        engine = make_engine(bootloader)
        listener = RecordingListener()
        engine.add_listener(listener)
        engine.remove_listener(listener)
        engine.run()
        assert listener.progress == []
