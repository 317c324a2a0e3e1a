"""
STM32 CAN Bootloader Protocol
=============================

This package implements the flash protocol engine:

- **plan**: compiles an image into the ordered list of frames to send
  and responses to expect (connect, erase, program, verify, jump)
- **engine**: retry-driven state machine executing a plan on a transport
- **flash**: one-call entry points from image, segments or file

Quick Start
-----------
    from stm32_can_loader.comms import CanTransport
    from stm32_can_loader.protocol import flash_file

    flash_file("firmware.elf", CanTransport("can0"))

Thread Safety
-------------
An ExecutionEngine is NOT thread-safe. Drive it from a single thread;
run() already serializes frame delivery and timeouts onto the caller.
"""

from stm32_can_loader.protocol.plan import (
    ACK,
    CHUNK_SIZE,
    CMD_CONNECT,
    CMD_ERASE,
    CMD_GO,
    CMD_READ_MEMORY,
    CMD_WRITE_DATA,
    CMD_WRITE_MEMORY,
    GLOBAL_ERASE,
    LONG_TIMEOUT_MS,
    SHORT_TIMEOUT_MS,
    SUB_CHUNK_SIZE,
    Phase,
    Plan,
    PlanBuilder,
    PlanStep,
    RetryPolicy,
    RxStep,
    TxStep,
    build_plan,
    count_steps,
    encode_memory_header,
)
from stm32_can_loader.protocol.engine import (
    EngineListener,
    EngineState,
    Event,
    EventKind,
    ExecutionEngine,
)
from stm32_can_loader.protocol.flash import (
    flash_file,
    flash_image,
    flash_segments,
)

__all__ = [
    # Plan constants
    "ACK",
    "CHUNK_SIZE",
    "CMD_CONNECT",
    "CMD_ERASE",
    "CMD_GO",
    "CMD_READ_MEMORY",
    "CMD_WRITE_DATA",
    "CMD_WRITE_MEMORY",
    "GLOBAL_ERASE",
    "LONG_TIMEOUT_MS",
    "SHORT_TIMEOUT_MS",
    "SUB_CHUNK_SIZE",
    # Plan
    "Phase",
    "Plan",
    "PlanBuilder",
    "PlanStep",
    "RetryPolicy",
    "RxStep",
    "TxStep",
    "build_plan",
    "count_steps",
    "encode_memory_header",
    # Engine
    "EngineListener",
    "EngineState",
    "Event",
    "EventKind",
    "ExecutionEngine",
    # Flash
    "flash_file",
    "flash_image",
    "flash_segments",
]
