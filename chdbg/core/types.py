"""Shared enums and schemas used across the debugger."""

from __future__ import annotations

import enum

from pydantic import BaseModel, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class GroupingMode(str, enum.Enum):
    """Nesting of clusters when rendering the chdesc graph."""

    NONE = "none"
    BLOCK = "block"
    OWNER = "owner"
    BLOCK_OWNER = "block-owner"
    OWNER_BLOCK = "owner-block"


class SearchMode(str, enum.Enum):
    """Which extreme of the live chdesc count to look for."""

    MAX = "max"
    MIN = "min"


# ── Shared Schemas ───────────────────────────────────────────────────────────


class OpcodeSummary(BaseModel):
    """One decoded opcode, as listed to users."""

    index: int
    module: int
    opcode: int
    name: str
    params: dict[str, int | str] = Field(default_factory=dict)
    file: str = ""
    line: int = 0
    function: str = ""
    stack: list[int] = Field(default_factory=list)
    has_effect: bool = True
    skippable: bool = False


class LoadReport(BaseModel):
    """Outcome of decoding a trace, including partial loads."""

    name: str
    opcodes: int = 0
    offset: int = 0
    tool_revision: int = 0
    opcode_revision: int = 0
    complete: bool = True
    error: str | None = None
    error_code: str | None = None
    advice: str | None = None
    stacks: int = 0


class ChdescSummary(BaseModel):
    address: int
    type: str
    block: int | None = None
    owner: int | None = None
    flags: int | None = None
    befores: int = 0
    afters: int = 0
    labels: list[str] = Field(default_factory=list)


class StateSummary(BaseModel):
    """Counts describing the state at one replay position."""

    applied: int
    opcodes: int
    chdescs: int
    bdescs: int
    dangling: int = 0
    free_list: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)


class FindResult(BaseModel):
    mode: SearchMode
    start: int
    stop: int
    position: int
    count: int
