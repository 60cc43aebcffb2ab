"""Opcode table and decoded opcode values.

Opcode kinds by module:

  INFO (1)           annotations: marks, device names, block numbers, labels
  BDESC (100)        block descriptor allocation and reference counting
  CHDESC_ALTER (200) chdesc creation, conversion, flags, edges, free list
  CHDESC_INFO (300)  informational chdesc events, no state change

Every kind is an OpcodeSpec; a decoded record is a ModuleOpcode carrying the
spec, its values in schema order, and where it was emitted from.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from chdbg.core.chdesc import hex32, render_flags
from chdbg.trace.schema import (
    STRING_SIZE,
    Module,
    OpcodeRegistry,
    OpcodeSpec,
    Param,
    ParamKind,
)
from chdbg.trace.stack import EMPTY_STACK, CallStack


# ── Parameters ───────────────────────────────────────────────────────────────

P_AR_COUNT = Param("ar_count", 4, ParamKind.UINT)
P_BD = Param("bd")
P_BLOCK = Param("block")
P_CHDESC = Param("chdesc")
P_COUNT = Param("count", 4, ParamKind.UINT)  # technically 16-bit
P_DD_COUNT = Param("dd_count", 4, ParamKind.UINT)
P_DDESC = Param("ddesc")
P_DEPTH = Param("depth", 4, ParamKind.UINT)
P_FLAGS = Param("flags", 4, ParamKind.FLAGS)
P_FREE_NEXT = Param("free_next")
P_FREE_PREV = Param("free_prev")
P_LABEL = Param("label", STRING_SIZE, ParamKind.STRING)
P_LENGTH = Param("length", 2, ParamKind.UINT)
P_LOCATION = Param("location")
P_MODULE = Param("module", 2, ParamKind.HEX16)
P_NAME = Param("name", STRING_SIZE, ParamKind.STRING)
P_NUMBER = Param("number", 4, ParamKind.UINT)
P_OFFSET = Param("offset", 2, ParamKind.UINT)
P_ORIGINAL = Param("original")
P_OWNER = Param("owner")
P_RECENT = Param("recent")
P_REF_COUNT = Param("ref_count", 4, ParamKind.UINT)
P_SLIP_UNDER = Param("slip_under", 1, ParamKind.BOOL)
P_SOURCE = Param("source")
P_TARGET = Param("target")
P_XOR = Param("xor")

BDESC_ALLOC_PARAMS = (P_BLOCK, P_DDESC, P_NUMBER, P_COUNT)
BDESC_REFS_PARAMS = (P_BLOCK, P_DDESC, P_REF_COUNT, P_AR_COUNT, P_DD_COUNT)
CHDESC_ONLY = (P_CHDESC,)
CONNECT = (P_SOURCE, P_TARGET)


def _info(number: int, name: str, *params: Param) -> OpcodeSpec:
    return OpcodeSpec(Module.INFO, number, name, params, has_effect=False, skippable=True)


def _bdesc(number: int, name: str, params: tuple[Param, ...], effect: bool = True) -> OpcodeSpec:
    return OpcodeSpec(Module.BDESC, number, name, params, has_effect=effect)


def _alter(number: int, name: str, *params: Param, effect: bool = True) -> OpcodeSpec:
    return OpcodeSpec(Module.CHDESC_ALTER, number, name, params, has_effect=effect)


def _chinfo(number: int, name: str, *params: Param) -> OpcodeSpec:
    return OpcodeSpec(Module.CHDESC_INFO, number, name, params, has_effect=False)


# ── Opcode table ─────────────────────────────────────────────────────────────

INFO_MARK = _info(0, "KDB_INFO_MARK", P_MODULE)
INFO_BD_NAME = _info(1, "KDB_INFO_BD_NAME", P_BD, P_NAME)
INFO_BDESC_NUMBER = _info(2, "KDB_INFO_BDESC_NUMBER", P_BLOCK, P_NUMBER, P_COUNT)
INFO_CHDESC_LABEL = _info(3, "KDB_INFO_CHDESC_LABEL", P_CHDESC, P_LABEL)

BDESC_ALLOC = _bdesc(101, "KDB_BDESC_ALLOC", BDESC_ALLOC_PARAMS)
BDESC_ALLOC_WRAP = _bdesc(102, "KDB_BDESC_ALLOC_WRAP", BDESC_ALLOC_PARAMS)
BDESC_RETAIN = _bdesc(103, "KDB_BDESC_RETAIN", BDESC_REFS_PARAMS, effect=False)
BDESC_RELEASE = _bdesc(104, "KDB_BDESC_RELEASE", BDESC_REFS_PARAMS, effect=False)
BDESC_DESTROY = _bdesc(105, "KDB_BDESC_DESTROY", (P_BLOCK, P_DDESC))
BDESC_FREE_DDESC = _bdesc(106, "KDB_BDESC_FREE_DDESC", (P_BLOCK, P_DDESC), effect=False)
BDESC_AUTORELEASE = _bdesc(107, "KDB_BDESC_AUTORELEASE", BDESC_REFS_PARAMS, effect=False)
BDESC_AR_RESET = _bdesc(108, "KDB_BDESC_AR_RESET", BDESC_REFS_PARAMS, effect=False)
BDESC_AR_POOL_PUSH = _bdesc(109, "KDB_BDESC_AR_POOL_PUSH", (P_DEPTH,), effect=False)
BDESC_AR_POOL_POP = _bdesc(110, "KDB_BDESC_AR_POOL_POP", (P_DEPTH,), effect=False)

CHDESC_CREATE_NOOP = _alter(201, "KDB_CHDESC_CREATE_NOOP", P_CHDESC, P_BLOCK, P_OWNER)
CHDESC_CREATE_BIT = _alter(202, "KDB_CHDESC_CREATE_BIT", P_CHDESC, P_BLOCK, P_OWNER, P_OFFSET, P_XOR)
CHDESC_CREATE_BYTE = _alter(
    203, "KDB_CHDESC_CREATE_BYTE", P_CHDESC, P_BLOCK, P_OWNER, P_OFFSET, P_LENGTH
)
CHDESC_CONVERT_NOOP = _alter(204, "KDB_CHDESC_CONVERT_NOOP", *CHDESC_ONLY)
CHDESC_CONVERT_BIT = _alter(205, "KDB_CHDESC_CONVERT_BIT", P_CHDESC, P_OFFSET, P_XOR)
CHDESC_CONVERT_BYTE = _alter(206, "KDB_CHDESC_CONVERT_BYTE", P_CHDESC, P_OFFSET, P_LENGTH)
CHDESC_REWRITE_BYTE = _alter(207, "KDB_CHDESC_REWRITE_BYTE", *CHDESC_ONLY, effect=False)
CHDESC_APPLY = _alter(208, "KDB_CHDESC_APPLY", *CHDESC_ONLY)
CHDESC_ROLLBACK = _alter(209, "KDB_CHDESC_ROLLBACK", *CHDESC_ONLY)
CHDESC_SET_FLAGS = _alter(210, "KDB_CHDESC_SET_FLAGS", P_CHDESC, P_FLAGS)
CHDESC_CLEAR_FLAGS = _alter(211, "KDB_CHDESC_CLEAR_FLAGS", P_CHDESC, P_FLAGS)
CHDESC_DESTROY = _alter(212, "KDB_CHDESC_DESTROY", *CHDESC_ONLY)
CHDESC_ADD_BEFORE = _alter(213, "KDB_CHDESC_ADD_BEFORE", *CONNECT)
CHDESC_ADD_AFTER = _alter(214, "KDB_CHDESC_ADD_AFTER", *CONNECT)
CHDESC_REM_BEFORE = _alter(215, "KDB_CHDESC_REM_BEFORE", *CONNECT)
CHDESC_REM_AFTER = _alter(216, "KDB_CHDESC_REM_AFTER", *CONNECT)
CHDESC_WEAK_RETAIN = _alter(217, "KDB_CHDESC_WEAK_RETAIN", P_CHDESC, P_LOCATION)
CHDESC_WEAK_FORGET = _alter(218, "KDB_CHDESC_WEAK_FORGET", P_CHDESC, P_LOCATION)
CHDESC_SET_OFFSET = _alter(219, "KDB_CHDESC_SET_OFFSET", P_CHDESC, P_OFFSET)
CHDESC_SET_LENGTH = _alter(220, "KDB_CHDESC_SET_LENGTH", P_CHDESC, P_LENGTH)
CHDESC_SET_BLOCK = _alter(221, "KDB_CHDESC_SET_BLOCK", P_CHDESC, P_BLOCK)
CHDESC_SET_OWNER = _alter(222, "KDB_CHDESC_SET_OWNER", P_CHDESC, P_OWNER)
CHDESC_SET_FREE_PREV = _alter(223, "KDB_CHDESC_SET_FREE_PREV", P_CHDESC, P_FREE_PREV)
CHDESC_SET_FREE_NEXT = _alter(224, "KDB_CHDESC_SET_FREE_NEXT", P_CHDESC, P_FREE_NEXT)
CHDESC_SET_FREE_HEAD = _alter(225, "KDB_CHDESC_SET_FREE_HEAD", *CHDESC_ONLY)

CHDESC_SATISFY = _chinfo(301, "KDB_CHDESC_SATISFY", *CHDESC_ONLY)
CHDESC_WEAK_COLLECT = _chinfo(302, "KDB_CHDESC_WEAK_COLLECT", *CHDESC_ONLY)
CHDESC_DETACH_BEFORES = _chinfo(303, "KDB_CHDESC_DETACH_BEFORES", *CHDESC_ONLY)
CHDESC_OVERLAP_ATTACH = _chinfo(304, "KDB_CHDESC_OVERLAP_ATTACH", P_RECENT, P_ORIGINAL)
CHDESC_OVERLAP_MULTIATTACH = _chinfo(
    305, "KDB_CHDESC_OVERLAP_MULTIATTACH", P_CHDESC, P_BLOCK, P_SLIP_UNDER
)

# Registration order is also the order of the stream header's schema table
ALL_OPCODES: tuple[OpcodeSpec, ...] = (
    INFO_MARK,
    INFO_BD_NAME,
    INFO_BDESC_NUMBER,
    INFO_CHDESC_LABEL,
    BDESC_ALLOC,
    BDESC_ALLOC_WRAP,
    BDESC_RETAIN,
    BDESC_RELEASE,
    BDESC_DESTROY,
    BDESC_FREE_DDESC,
    BDESC_AUTORELEASE,
    BDESC_AR_RESET,
    BDESC_AR_POOL_PUSH,
    BDESC_AR_POOL_POP,
    CHDESC_CREATE_NOOP,
    CHDESC_CREATE_BIT,
    CHDESC_CREATE_BYTE,
    CHDESC_CONVERT_NOOP,
    CHDESC_CONVERT_BIT,
    CHDESC_CONVERT_BYTE,
    CHDESC_REWRITE_BYTE,
    CHDESC_APPLY,
    CHDESC_ROLLBACK,
    CHDESC_SET_FLAGS,
    CHDESC_CLEAR_FLAGS,
    CHDESC_DESTROY,
    CHDESC_ADD_BEFORE,
    CHDESC_ADD_AFTER,
    CHDESC_REM_BEFORE,
    CHDESC_REM_AFTER,
    CHDESC_WEAK_RETAIN,
    CHDESC_WEAK_FORGET,
    CHDESC_SET_OFFSET,
    CHDESC_SET_LENGTH,
    CHDESC_SET_BLOCK,
    CHDESC_SET_OWNER,
    CHDESC_SET_FREE_PREV,
    CHDESC_SET_FREE_NEXT,
    CHDESC_SET_FREE_HEAD,
    CHDESC_SATISFY,
    CHDESC_WEAK_COLLECT,
    CHDESC_DETACH_BEFORES,
    CHDESC_OVERLAP_ATTACH,
    CHDESC_OVERLAP_MULTIATTACH,
)


def build_registry() -> OpcodeRegistry:
    """Registry holding every opcode kind in header order."""
    return OpcodeRegistry(ALL_OPCODES)


# ── Decoded opcodes ──────────────────────────────────────────────────────────


def format_value(param: Param, value: int | str) -> str:
    if isinstance(value, str):
        return repr(value)
    if param.kind == ParamKind.HEX:
        return hex32(value)
    if param.kind == ParamKind.HEX16:
        return f"0x{value:04x}"
    if param.kind == ParamKind.FLAGS:
        return render_flags(value)
    if param.kind == ParamKind.BOOL:
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class ModuleOpcode:
    """One decoded trace record."""

    spec: OpcodeSpec
    values: tuple[int | str, ...]
    file: str = ""
    line: int = 0
    function: str = ""
    stack: CallStack = EMPTY_STACK
    index: int = -1

    def __post_init__(self) -> None:
        if len(self.values) != len(self.spec.params):
            raise ValueError(
                f"{self.spec.name} takes {len(self.spec.params)} values, got {len(self.values)}"
            )

    def __getitem__(self, name: str) -> Any:
        return self.values[self.spec.index_of(name)]

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def module(self) -> int:
        return int(self.spec.module)

    @property
    def number(self) -> int:
        return self.spec.number

    @property
    def has_effect(self) -> bool:
        """Whether applying this opcode changes observable state."""
        return self.spec.has_effect

    @property
    def is_skippable(self) -> bool:
        """Whether single-stepping may pass over this opcode silently."""
        return self.spec.skippable

    @property
    def args(self) -> dict[str, int | str]:
        return dict(zip(self.spec.param_names, self.values))

    @property
    def location(self) -> str:
        return f"{self.function}() at {self.file}:{self.line}"

    def describe(self, show_stack: bool = True) -> str:
        """Multi-line listing: the opcode, its call site and its stack."""
        lines = [str(self), f"    from {self.location}"]
        if show_stack:
            for depth, frame in enumerate(self.stack):
                lines.append(f"    [{depth}] {hex32(frame)}")
        return "\n".join(lines)

    def __str__(self) -> str:
        fields = ", ".join(
            f"{param.name} = {format_value(param, value)}"
            for param, value in zip(self.spec.params, self.values)
        )
        return f"{self.spec.name}: {fields}" if fields else self.spec.name
