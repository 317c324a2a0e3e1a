"""
Flash Operations
================

Convenience entry points that tie the pipeline together:

    firmware file ─> segments ─> image ─> plan ─> engine ⇄ transport

Planning always completes before the transport is started, so planning
errors are raised before any frame is sent. The transport is stopped on
every exit path: success, planning failure or execution failure.
"""

import logging
from pathlib import Path
from typing import Callable, Iterable, Union

from stm32_can_loader.comms.transport import Transport
from stm32_can_loader.config import DEFAULT_ATTEMPTS, FLASH_BASE_ADDRESS
from stm32_can_loader.image.loaders import load_segments
from stm32_can_loader.image.segments import Image, Segment, linearize
from stm32_can_loader.protocol.engine import EngineListener, ExecutionEngine
from stm32_can_loader.protocol.plan import Plan, build_plan

logger = logging.getLogger(__name__)


def _execute(
    prepare: Callable[[], Plan],
    transport: Transport,
    attempts: int,
    listeners: Iterable[EngineListener],
) -> ExecutionEngine:
    try:
        plan = prepare()
        engine = ExecutionEngine(plan, transport, attempts=attempts)
        for listener in listeners:
            engine.add_listener(listener)
        transport.start()
        engine.run()
        return engine
    finally:
        transport.stop()


def flash_image(
    image: Image,
    transport: Transport,
    attempts: int = DEFAULT_ATTEMPTS,
    listeners: Iterable[EngineListener] = (),
) -> ExecutionEngine:
    """
    Erase, program, verify and start an image.

    Args:
        image: Linear image to flash.
        transport: Transport to the bootloader (started and stopped here).
        attempts: Shared retry budget for timeouts.
        listeners: Progress observers attached to the engine.

    Returns:
        The completed engine.

    Raises:
        StepTimeoutError: If the bootloader stopped answering.
        TransportError: If the CAN transport failed.
    """
    return _execute(lambda: build_plan(image), transport, attempts, listeners)


def flash_segments(
    segments: Iterable[Segment],
    transport: Transport,
    base_address: int = FLASH_BASE_ADDRESS,
    attempts: int = DEFAULT_ATTEMPTS,
    listeners: Iterable[EngineListener] = (),
) -> ExecutionEngine:
    """
    Linearize segments and flash the result.

    Raises:
        PlanningError: If the segments are out of order or not contiguous.
        StepTimeoutError: If the bootloader stopped answering.
        TransportError: If the CAN transport failed.
    """
    return _execute(
        lambda: build_plan(linearize(segments, base_address)),
        transport, attempts, listeners,
    )


def flash_file(
    path: Union[str, Path],
    transport: Transport,
    base_address: int = FLASH_BASE_ADDRESS,
    attempts: int = DEFAULT_ATTEMPTS,
    listeners: Iterable[EngineListener] = (),
) -> ExecutionEngine:
    """
    Load a firmware file (ELF, Intel HEX or raw binary) and flash it.

    Example:
        with_progress = [MyListener()]
        flash_file("firmware.elf", CanTransport("can0"), listeners=with_progress)

    Raises:
        FirmwareFormatError: If the file cannot be parsed.
        PlanningError: If the segments are out of order or not contiguous.
        StepTimeoutError: If the bootloader stopped answering.
        TransportError: If the CAN transport failed.
    """
    path = Path(path)
    logger.info("Flashing %s", path)

    def prepare() -> Plan:
        segments = load_segments(path, base_address)
        return build_plan(linearize(segments, base_address))

    return _execute(prepare, transport, attempts, listeners)
