"""Trace writer.

Produces streams in the canonical layout, mirroring the kernel debug module:
first the header with its schema table, then one record per call to
``record()``. Used to build fixtures and by tools that synthesise traces.

Usage:
    writer = TraceWriter().write_header()
    writer.record(CHDESC_CREATE_NOOP, chdesc=0x10, owner=0x99)
    writer.record(CHDESC_SET_FLAGS, chdesc=0x10, flags=ChdescFlag.MARKED)
    data = writer.getvalue()
"""

from __future__ import annotations

from typing import Iterable

from chdbg.trace.decoder import ByteOrder
from chdbg.trace.opcodes import build_registry
from chdbg.trace.revision import CURRENT_LAYOUT, OPCODE_REVISION, TOOL_REVISION, RecordLayout
from chdbg.trace.schema import OpcodeRegistry, OpcodeSpec, Param


class TraceWriter:
    """Accumulates an encoded trace in memory."""

    def __init__(
        self,
        registry: OpcodeRegistry | None = None,
        byte_order: ByteOrder = "big",
        tool_revision: int = TOOL_REVISION,
        opcode_revision: int = OPCODE_REVISION,
        layout: RecordLayout = CURRENT_LAYOUT,
    ) -> None:
        self.registry = registry or build_registry()
        self.byte_order: ByteOrder = byte_order
        self.tool_revision = tool_revision
        self.opcode_revision = opcode_revision
        self.layout = layout
        self.records = 0
        self._buffer = bytearray()

    # ── Primitives ───────────────────────────────────────────────────────

    def uint(self, value: int, width: int) -> TraceWriter:
        self._buffer += (value & ((1 << (8 * width)) - 1)).to_bytes(width, self.byte_order)
        return self

    def u8(self, value: int) -> TraceWriter:
        return self.uint(value, 1)

    def u16(self, value: int) -> TraceWriter:
        return self.uint(value, 2)

    def u32(self, value: int) -> TraceWriter:
        return self.uint(value, 4)

    def string(self, value: str) -> TraceWriter:
        self._buffer += value.encode("utf-8") + b"\x00"
        return self

    def params(self, params: Iterable[Param]) -> TraceWriter:
        """Write a parameter self-description and its terminator."""
        for param in params:
            self.u8(param.size).string(param.name)
        return self.u8(0)

    # ── Header and records ───────────────────────────────────────────────

    def write_header(self) -> TraceWriter:
        self.u32(self.tool_revision).u32(self.opcode_revision)
        for spec in self.registry:
            self.u16(spec.module).u16(spec.number).string(spec.name)
            self.params(spec.params)
        return self.u16(0)

    def record(
        self,
        spec: OpcodeSpec | str,
        *values: int | str,
        file: str = "trace.c",
        line: int = 1,
        function: str = "traced",
        stack: Iterable[int] = (),
        **named: int | str,
    ) -> TraceWriter:
        """Append one opcode record.

        Values are given positionally in schema order or by parameter name;
        unnamed parameters default to 0 (or "" for strings).
        """
        if isinstance(spec, str):
            spec = self.registry.by_name(spec)
        if values and named:
            raise ValueError("Pass values positionally or by name, not both")
        if values:
            if len(values) != len(spec.params):
                raise ValueError(f"{spec.name} takes {len(spec.params)} values")
            ordered = list(values)
        else:
            unknown = set(named) - set(spec.param_names)
            if unknown:
                raise ValueError(f"{spec.name} has no parameters {sorted(unknown)}")
            ordered = [named.get(p.name, "" if p.is_string else 0) for p in spec.params]

        self.string(file).u32(line).string(function)
        self.u16(spec.module).u16(spec.number)
        if self.layout.names:
            self.string(spec.name)
        self.params(spec.params)
        for param, value in zip(spec.params, ordered):
            if param.is_string:
                self.string(str(value))
            else:
                self.uint(int(value), param.size)
        if self.layout.stack:
            for frame in stack:
                self.u32(frame)
            self.u32(0)
        self.records += 1
        return self

    def getvalue(self) -> bytes:
        return bytes(self._buffer)

    def __len__(self) -> int:
        return len(self._buffer)
