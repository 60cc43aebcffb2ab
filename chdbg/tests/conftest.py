"""Shared fixtures for the chdbg test suite."""

from __future__ import annotations

from typing import Callable

import pytest

from chdbg.core.config import get_settings
from chdbg.core.state import SystemState
from chdbg.replay.debugger import Debugger
from chdbg.trace import opcodes as op
from chdbg.trace.opcodes import ModuleOpcode
from chdbg.trace.writer import TraceWriter


# ── Settings ─────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Every test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ── Trace builders ───────────────────────────────────────────────────────────


@pytest.fixture
def writer() -> TraceWriter:
    """A writer with the header already emitted."""
    return TraceWriter().write_header()


@pytest.fixture
def header_bytes() -> bytes:
    return TraceWriter().write_header().getvalue()


@pytest.fixture
def sample_trace() -> bytes:
    """A small trace touching every kind of state.

    Positions (opcodes applied) of interest:
        3  two NOOPs with an edge 0x10 -> 0x20
        5  a BIT chdesc 0x30 depending on a not-yet-created 0x40
        6  0x40 created (placeholder upgraded)
        8  0x20 destroyed
    """
    w = TraceWriter().write_header()
    w.record(op.INFO_BD_NAME, bd=0xD0, name="sda")
    w.record(op.CHDESC_CREATE_NOOP, chdesc=0x10, block=0xB0, owner=0xD0)
    w.record(op.CHDESC_CREATE_NOOP, chdesc=0x20, block=0xB0, owner=0xD0)
    w.record(op.CHDESC_ADD_BEFORE, source=0x10, target=0x20, stack=[0x8000_1000, 0x8000_2000])
    w.record(op.CHDESC_CREATE_BIT, chdesc=0x30, block=0xB1, owner=0xD0, offset=4, xor=0xFF)
    w.record(op.CHDESC_ADD_BEFORE, source=0x30, target=0x40)
    w.record(op.CHDESC_CREATE_NOOP, chdesc=0x40, block=0xB1, owner=0xD1)
    w.record(op.CHDESC_SET_FLAGS, chdesc=0x10, flags=0x01)
    w.record(op.CHDESC_DESTROY, chdesc=0x20)
    w.record(op.INFO_MARK, module=0x0C)
    w.record(op.CHDESC_SET_FLAGS, chdesc=0x30, flags=0x04)
    return w.getvalue()


@pytest.fixture
def debugger(sample_trace: bytes) -> Debugger:
    return Debugger.load(sample_trace, name="sample.trace")


@pytest.fixture
def state() -> SystemState:
    return SystemState()


@pytest.fixture
def make_opcode() -> Callable[..., ModuleOpcode]:
    """Build a ModuleOpcode from an OpcodeSpec and named values."""

    counter = {"index": 0}

    def _make(spec, **named) -> ModuleOpcode:
        values = tuple(named.get(p.name, "" if p.is_string else 0) for p in spec.params)
        opcode = ModuleOpcode(spec, values, "test.c", 1, "test", index=counter["index"])
        counter["index"] += 1
        return opcode

    return _make
