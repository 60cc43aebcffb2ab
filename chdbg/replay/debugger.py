"""Replay controller.

A Debugger owns one trace: the append-only log of decoded opcodes, a single
SystemState and the ``applied`` cursor (how many log entries the state
reflects). Moving forward applies opcodes in order; moving backward resets
the state and replays from the start. There is no undo.

    log      [op0][op1][op2][op3][op4] ... [opN-1]
    applied             ^ 2: state reflects op0..op1

Opcodes can be decoded ahead of time (``read_opcodes()``), in bounded
batches (``read_opcodes(count)``), or streamed, decoding and applying each
record as it arrives (``stream()``).
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import BinaryIO, Callable, Sequence

from chdbg.core.errors import EndOfTrace, TraceError
from chdbg.core.state import SystemState
from chdbg.core.types import ChdescSummary, LoadReport, OpcodeSummary, StateSummary
from chdbg.replay.apply import apply_opcode
from chdbg.trace.decoder import ByteOrder
from chdbg.trace.opcodes import ModuleOpcode
from chdbg.trace.records import RecordDecoder
from chdbg.trace.stack import StackTable

logger = logging.getLogger(__name__)


class Debugger:
    """One loaded trace and its replay position."""

    def __init__(
        self,
        name: str,
        decoder: RecordDecoder | None = None,
        opcodes: Sequence[ModuleOpcode] = (),
    ) -> None:
        self.name = name
        self.decoder = decoder
        self._opcodes: list[ModuleOpcode] = list(opcodes)
        self._state = SystemState()
        self._applied = 0
        self.exhausted = decoder is None
        self.error: TraceError | None = None

    # ── Loading ──────────────────────────────────────────────────────────

    @classmethod
    def open(
        cls,
        source: BinaryIO | bytes,
        name: str = "<trace>",
        byte_order: ByteOrder = "big",
        intern_stacks: bool = True,
    ) -> Debugger:
        """Verify the stream header and return a Debugger with an empty log."""
        decoder = RecordDecoder.open(source, byte_order, stacks=StackTable(intern_stacks))
        return cls(name, decoder)

    @classmethod
    def load(
        cls,
        source: BinaryIO | bytes,
        name: str = "<trace>",
        count: int | None = None,
        byte_order: ByteOrder = "big",
        intern_stacks: bool = True,
        strict: bool = False,
    ) -> Debugger:
        """Open a trace and decode it ahead of time.

        Header errors always raise. A malformed record stops decoding; with
        ``strict`` the error is raised, otherwise it is kept on ``error`` and
        the opcodes decoded so far stay usable.
        """
        debugger = cls.open(source, name, byte_order, intern_stacks)
        try:
            debugger.read_opcodes(count)
        except TraceError:
            if strict:
                raise
        return debugger

    def read_opcode(self) -> ModuleOpcode | None:
        """Decode one more record into the log; None at end of trace."""
        if self.decoder is None or self.exhausted:
            return None
        try:
            opcode = self.decoder.read_opcode()
        except EndOfTrace:
            self.exhausted = True
            return None
        except TraceError as exc:
            self.exhausted = True
            self.error = exc
            logger.warning(
                "Bad input (%s) while reading %s; %d opcodes OK", exc, self.name, len(self._opcodes)
            )
            raise
        self._opcodes.append(opcode)
        return opcode

    def read_opcodes(self, count: int | None = None) -> int:
        """Decode up to ``count`` records (all when None); returns how many were read."""
        read = 0
        while count is None or read < count:
            if self.read_opcode() is None:
                break
            read += 1
        logger.info("Read %d opcodes from %s", read, self.name)
        return read

    def stream(
        self,
        count: int | None = None,
        progress: Callable[[int, int], None] | None = None,
    ) -> int:
        """Decode and immediately apply up to ``count`` records.

        Any already-decoded opcodes are applied first. ``progress`` is called
        with (opcodes streamed, byte offset) after each record.
        """
        self.replay_all()
        streamed = 0
        while count is None or streamed < count:
            opcode = self.read_opcode()
            if opcode is None:
                break
            self._apply_next()
            streamed += 1
            if progress is not None:
                progress(streamed, self.offset)
        return streamed

    @property
    def offset(self) -> int:
        return self.decoder.offset if self.decoder is not None else 0

    def close(self) -> None:
        """Drop the input and the call-stack interning table."""
        if self.decoder is not None:
            self.decoder.stacks.clear()
        self.exhausted = True

    # ── Replay ───────────────────────────────────────────────────────────

    def _apply_next(self) -> ModuleOpcode:
        opcode = self._opcodes[self._applied]
        self._applied += 1
        try:
            apply_opcode(opcode, self._state)
        except Exception:
            logger.error("Replay aborted at opcode #%d: %s", opcode.index, opcode)
            raise
        return opcode

    def _advance(self, count: int) -> bool:
        effect = False
        while self._applied < len(self._opcodes) and count > 0:
            effect |= self._apply_next().has_effect
            count -= 1
        return effect

    def replay_all(self) -> bool:
        """Apply every remaining opcode; True if any had an observable effect."""
        return self._advance(len(self._opcodes) - self._applied)

    def replay(self, count: int = 1) -> bool:
        """Apply up to ``count`` further opcodes.

        A single step keeps going while the opcode it just applied is
        skippable, so it lands after the next non-annotation opcode.
        """
        single = count == 1
        effect = False
        while self._applied < len(self._opcodes) and count > 0:
            opcode = self._apply_next()
            effect |= opcode.has_effect
            count -= 1
            if single and count == 0 and opcode.is_skippable:
                count = 1
        return effect

    def reset_state(self) -> None:
        self._state = SystemState()
        self._applied = 0

    def jump(self, position: int) -> bool:
        """Seek to ``position`` (clamped to the log); resets when seeking backward."""
        position = max(0, min(position, len(self._opcodes)))
        if position < self._applied:
            self.reset_state()
        return self._advance(position - self._applied)

    def step(self, delta: int = 1) -> bool:
        """Move relative to the current position; negative deltas reset and replay."""
        if delta < 0:
            return self.jump(self._applied + delta)
        return self.replay(delta)

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def state(self) -> SystemState:
        return self._state

    @property
    def applied(self) -> int:
        return self._applied

    @property
    def opcode_count(self) -> int:
        return len(self._opcodes)

    def get_opcode(self, index: int) -> ModuleOpcode:
        if index < 0 or index >= len(self._opcodes):
            raise IndexError(f"Opcode #{index} out of range (0..{len(self._opcodes) - 1})")
        return self._opcodes[index]

    @property
    def opcodes(self) -> tuple[ModuleOpcode, ...]:
        return tuple(self._opcodes)

    # ── Reports ──────────────────────────────────────────────────────────

    def report(self) -> LoadReport:
        decoder = self.decoder
        return LoadReport(
            name=self.name,
            opcodes=len(self._opcodes),
            offset=self.offset,
            tool_revision=decoder.tool_revision if decoder else 0,
            opcode_revision=decoder.opcode_revision if decoder else 0,
            complete=self.error is None,
            error=str(self.error) if self.error else None,
            error_code=self.error.code.value if self.error else None,
            advice=getattr(self.error, "advice", None),
            stacks=len(decoder.stacks) if decoder else 0,
        )

    def summarize(self) -> StateSummary:
        chdescs = self._state.chdescs.values()
        by_type = Counter(chdesc.type.name for chdesc in chdescs)
        return StateSummary(
            applied=self._applied,
            opcodes=len(self._opcodes),
            chdescs=len(chdescs),
            bdescs=len(self._state.bdescs),
            dangling=by_type.get("DANGLING", 0),
            free_list=len(self._state.free_list()),
            by_type=dict(sorted(by_type.items())),
        )

    def chdesc_summaries(self) -> list[ChdescSummary]:
        """One summary per live chdesc, in registration order."""
        summaries = []
        for chdesc in self._state.chdescs.values():
            valid = chdesc.is_valid
            summaries.append(
                ChdescSummary(
                    address=chdesc.address,
                    type=chdesc.type.name,
                    block=chdesc.block if valid else None,
                    owner=chdesc.owner if valid else None,
                    flags=chdesc.flags if valid else None,
                    befores=len(chdesc.befores),
                    afters=len(chdesc.afters),
                    labels=list(self._state.labels.get(chdesc.address, ())),
                )
            )
        return summaries

    def opcode_summary(self, index: int) -> OpcodeSummary:
        opcode = self.get_opcode(index)
        return OpcodeSummary(
            index=index,
            module=opcode.module,
            opcode=opcode.number,
            name=opcode.name,
            params=opcode.args,
            file=opcode.file,
            line=opcode.line,
            function=opcode.function,
            stack=list(opcode.stack),
            has_effect=opcode.has_effect,
            skippable=opcode.is_skippable,
        )

    def __str__(self) -> str:
        return f"Debugging {self.name}, read {len(self._opcodes)} opcodes, applied {self._applied}"
