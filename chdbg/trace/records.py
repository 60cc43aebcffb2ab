"""Trace header and record decoding.

Stream layout (big-endian):

    header  u32 tool_rev, u32 opcode_rev, schema table, u16 0
    record  cstring file, u32 line, cstring function,
            u16 module, u16 opcode, [cstring name],
            ([u8 size][cstring param])* u8 0,
            values..., [(u32 frame)* u32 0]

The bracketed parts depend on the RecordLayout the revision gate picked.
"""

from __future__ import annotations

import logging
from typing import BinaryIO, Iterator

from chdbg.core.errors import EndOfTrace, TraceError
from chdbg.trace.decoder import ByteOrder, TraceReader
from chdbg.trace.opcodes import ModuleOpcode, build_registry
from chdbg.trace.revision import RecordLayout, RevisionRule, read_revision
from chdbg.trace.schema import OpcodeRegistry, read_values, verify_name, verify_params
from chdbg.trace.stack import CallStack, StackTable

logger = logging.getLogger(__name__)


class RecordDecoder:
    """Decodes opcode records from one trace stream."""

    def __init__(
        self,
        reader: TraceReader,
        layout: RecordLayout,
        registry: OpcodeRegistry | None = None,
        stacks: StackTable | None = None,
        tool_revision: int = 0,
        opcode_revision: int = 0,
    ) -> None:
        self.reader = reader
        self.layout = layout
        self.registry = registry or build_registry()
        self.stacks = stacks if stacks is not None else StackTable()
        self.tool_revision = tool_revision
        self.opcode_revision = opcode_revision
        self.decoded = 0

    @classmethod
    def open(
        cls,
        source: BinaryIO | bytes,
        byte_order: ByteOrder = "big",
        registry: OpcodeRegistry | None = None,
        stacks: StackTable | None = None,
        rules: list[RevisionRule] | None = None,
    ) -> RecordDecoder:
        """Read and verify a stream header; the decoder is left at the first record."""
        reader = TraceReader(source, byte_order)
        registry = registry or build_registry()
        try:
            tool_revision, opcode_revision, layout = read_revision(reader, rules)
            registry.verify_header(reader)
        except TraceError as exc:
            exc.decoded = 0
            raise
        logger.debug(
            "Header OK: revisions %d/%d, %d opcode kinds, %d bytes",
            tool_revision, opcode_revision, len(registry), reader.offset,
        )
        return cls(reader, layout, registry, stacks, tool_revision, opcode_revision)

    @property
    def offset(self) -> int:
        return self.reader.offset

    def read_opcode(self) -> ModuleOpcode:
        """Decode the next record.

        Raises EndOfTrace when the input ends exactly between records, and a
        TraceError (with ``decoded`` set) for anything malformed.
        """
        reader = self.reader
        try:
            file = reader.read_string("source file", at_boundary=True)
            line = reader.read_u32("source line")
            function = reader.read_string("function name")
            module = reader.read_u16("module id")
            number = reader.read_u16("opcode id")
            spec = self.registry.lookup(module, number, reader.offset)
            if self.layout.names:
                verify_name(reader, spec)
            verify_params(reader, spec)
            values = read_values(reader, spec)
            stack = self._read_stack() if self.layout.stack else self.stacks.intern(())
        except TraceError as exc:
            exc.decoded = self.decoded
            raise
        opcode = ModuleOpcode(spec, values, file, line, function, stack, self.decoded)
        self.decoded += 1
        return opcode

    def _read_stack(self) -> CallStack:
        frames: list[int] = []
        while True:
            frame = self.reader.read_u32("stack frame")
            if frame == 0:
                break
            frames.append(frame)
        return self.stacks.intern(frames)

    def __iter__(self) -> Iterator[ModuleOpcode]:
        while True:
            try:
                yield self.read_opcode()
            except EndOfTrace:
                return

