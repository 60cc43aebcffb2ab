"""Opcode application: one handler per opcode kind.

APPLY_HANDLERS maps every OpcodeSpec in the opcode table to the function
that applies it to a SystemState. The table is checked for completeness at
import time, so adding an opcode kind without a handler fails loudly.

Conventions shared by the handlers:
  - an opcode whose subject chdesc is not live is ignored (logged at DEBUG)
  - edge and free-list targets resolve through SystemState.reference_chdesc,
    which materialises DANGLING placeholders for forward references
  - a create on a DANGLING placeholder upgrades it in place
  - invariant violations (ChdescStateError, DuplicateRegistration) propagate
"""

from __future__ import annotations

import logging
from typing import Callable

from chdbg.core.chdesc import Chdesc, ChdescFlag, hex32
from chdbg.core.state import Bdesc, SystemState
from chdbg.trace import opcodes as op
from chdbg.trace.opcodes import ModuleOpcode
from chdbg.trace.schema import OpcodeSpec

logger = logging.getLogger(__name__)

Handler = Callable[[ModuleOpcode, SystemState], None]


def _subject(opcode: ModuleOpcode, state: SystemState, param: str = "chdesc") -> Chdesc | None:
    address = opcode[param]
    chdesc = state.lookup_chdesc(address)
    if chdesc is None:
        logger.debug("#%d %s: no live chdesc %s, ignored", opcode.index, opcode.name, hex32(address))
    return chdesc


def _nothing(opcode: ModuleOpcode, state: SystemState) -> None:
    """Informational opcode."""


# ── Info ─────────────────────────────────────────────────────────────────────


def _bd_name(opcode: ModuleOpcode, state: SystemState) -> None:
    state.bd_names[opcode["bd"]] = opcode["name"]


def _bdesc_number(opcode: ModuleOpcode, state: SystemState) -> None:
    state.block_numbers[opcode["block"]] = (opcode["number"], opcode["count"] & 0xFFFF)


def _chdesc_label(opcode: ModuleOpcode, state: SystemState) -> None:
    state.add_label(opcode["chdesc"], opcode["label"])


# ── Bdesc ────────────────────────────────────────────────────────────────────


def _bdesc_alloc(opcode: ModuleOpcode, state: SystemState) -> None:
    state.add_bdesc(
        Bdesc(
            address=opcode["block"],
            ddesc=opcode["ddesc"],
            number=opcode["number"],
            count=opcode["count"] & 0xFFFF,
            ref_count=0,
            wrapped=opcode.spec == op.BDESC_ALLOC_WRAP,
        )
    )


def _bdesc_refs(opcode: ModuleOpcode, state: SystemState) -> None:
    bdesc = state.lookup_bdesc(opcode["block"])
    if bdesc is None:
        logger.debug("#%d %s: unknown bdesc %s", opcode.index, opcode.name, hex32(opcode["block"]))
        return
    bdesc.ref_count = opcode["ref_count"]
    bdesc.ar_count = opcode["ar_count"]
    bdesc.dd_count = opcode["dd_count"]


def _bdesc_destroy(opcode: ModuleOpcode, state: SystemState) -> None:
    state.remove_bdesc(opcode["block"])


def _ar_pool(opcode: ModuleOpcode, state: SystemState) -> None:
    state.ar_pool_depth = opcode["depth"]


# ── Chdesc creation and conversion ───────────────────────────────────────────


def _creatable(opcode: ModuleOpcode, state: SystemState) -> Chdesc:
    """The DANGLING placeholder for this address, or a new one to register."""
    address = opcode["chdesc"]
    chdesc = state.lookup_chdesc(address)
    if chdesc is not None and chdesc.is_dangling:
        return chdesc
    chdesc = Chdesc(address, opcode.index)
    # Strict registry: a live duplicate raises here
    state.add_chdesc(chdesc)
    return chdesc


def _create_noop(opcode: ModuleOpcode, state: SystemState) -> None:
    _creatable(opcode, state).realize(opcode["block"], opcode["owner"], opcode.index)


def _create_bit(opcode: ModuleOpcode, state: SystemState) -> None:
    _creatable(opcode, state).realize_bit(
        opcode["block"], opcode["owner"], opcode["offset"], opcode["xor"], opcode.index
    )


def _create_byte(opcode: ModuleOpcode, state: SystemState) -> None:
    _creatable(opcode, state).realize_byte(
        opcode["block"], opcode["owner"], opcode["offset"], opcode["length"], opcode.index
    )


def _convert_noop(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.convert_noop()


def _convert_bit(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.convert_bit(opcode["offset"], opcode["xor"])


def _convert_byte(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.convert_byte(opcode["offset"], opcode["length"])


# ── Chdesc flags and fields ──────────────────────────────────────────────────


def _apply(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.clear_flags(ChdescFlag.ROLLBACK)


def _rollback(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.set_flags(ChdescFlag.ROLLBACK)


def _set_flags(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.set_flags(opcode["flags"])


def _clear_flags(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.clear_flags(opcode["flags"])


def _destroy(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is None:
        return
    chdesc.destroy()
    state.remove_chdesc(chdesc.address)
    if state.free_head is chdesc:
        state.free_head = None


def _set_offset(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.offset = opcode["offset"]


def _set_length(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.length = opcode["length"]


def _set_block(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.block = opcode["block"]


def _set_owner(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.owner = opcode["owner"]


# ── Edges and weak references ────────────────────────────────────────────────


def _add_before(opcode: ModuleOpcode, state: SystemState) -> None:
    source = state.reference_chdesc(opcode["source"])
    target = state.reference_chdesc(opcode["target"])
    if source is not None and target is not None:
        source.add_before(target)


def _add_after(opcode: ModuleOpcode, state: SystemState) -> None:
    source = state.reference_chdesc(opcode["source"])
    target = state.reference_chdesc(opcode["target"])
    if source is not None and target is not None:
        source.add_after(target)


def _rem_before(opcode: ModuleOpcode, state: SystemState) -> None:
    source = _subject(opcode, state, "source")
    if source is not None:
        source.rem_before(opcode["target"])


def _rem_after(opcode: ModuleOpcode, state: SystemState) -> None:
    source = _subject(opcode, state, "source")
    if source is not None:
        source.rem_after(opcode["target"])


def _weak_retain(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.weak_retain(opcode["location"])


def _weak_forget(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.weak_forget(opcode["location"])


# ── Free list ────────────────────────────────────────────────────────────────


def _set_free_prev(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.free_prev = state.reference_chdesc(opcode["free_prev"])


def _set_free_next(opcode: ModuleOpcode, state: SystemState) -> None:
    chdesc = _subject(opcode, state)
    if chdesc is not None:
        chdesc.free_next = state.reference_chdesc(opcode["free_next"])


def _set_free_head(opcode: ModuleOpcode, state: SystemState) -> None:
    state.free_head = state.reference_chdesc(opcode["chdesc"])


# ── Dispatch ─────────────────────────────────────────────────────────────────

APPLY_HANDLERS: dict[OpcodeSpec, Handler] = {
    op.INFO_MARK: _nothing,
    op.INFO_BD_NAME: _bd_name,
    op.INFO_BDESC_NUMBER: _bdesc_number,
    op.INFO_CHDESC_LABEL: _chdesc_label,
    op.BDESC_ALLOC: _bdesc_alloc,
    op.BDESC_ALLOC_WRAP: _bdesc_alloc,
    op.BDESC_RETAIN: _bdesc_refs,
    op.BDESC_RELEASE: _bdesc_refs,
    op.BDESC_DESTROY: _bdesc_destroy,
    op.BDESC_FREE_DDESC: _nothing,
    op.BDESC_AUTORELEASE: _bdesc_refs,
    op.BDESC_AR_RESET: _bdesc_refs,
    op.BDESC_AR_POOL_PUSH: _ar_pool,
    op.BDESC_AR_POOL_POP: _ar_pool,
    op.CHDESC_CREATE_NOOP: _create_noop,
    op.CHDESC_CREATE_BIT: _create_bit,
    op.CHDESC_CREATE_BYTE: _create_byte,
    op.CHDESC_CONVERT_NOOP: _convert_noop,
    op.CHDESC_CONVERT_BIT: _convert_bit,
    op.CHDESC_CONVERT_BYTE: _convert_byte,
    op.CHDESC_REWRITE_BYTE: _nothing,
    op.CHDESC_APPLY: _apply,
    op.CHDESC_ROLLBACK: _rollback,
    op.CHDESC_SET_FLAGS: _set_flags,
    op.CHDESC_CLEAR_FLAGS: _clear_flags,
    op.CHDESC_DESTROY: _destroy,
    op.CHDESC_ADD_BEFORE: _add_before,
    op.CHDESC_ADD_AFTER: _add_after,
    op.CHDESC_REM_BEFORE: _rem_before,
    op.CHDESC_REM_AFTER: _rem_after,
    op.CHDESC_WEAK_RETAIN: _weak_retain,
    op.CHDESC_WEAK_FORGET: _weak_forget,
    op.CHDESC_SET_OFFSET: _set_offset,
    op.CHDESC_SET_LENGTH: _set_length,
    op.CHDESC_SET_BLOCK: _set_block,
    op.CHDESC_SET_OWNER: _set_owner,
    op.CHDESC_SET_FREE_PREV: _set_free_prev,
    op.CHDESC_SET_FREE_NEXT: _set_free_next,
    op.CHDESC_SET_FREE_HEAD: _set_free_head,
    op.CHDESC_SATISFY: _nothing,
    op.CHDESC_WEAK_COLLECT: _nothing,
    op.CHDESC_DETACH_BEFORES: _nothing,
    op.CHDESC_OVERLAP_ATTACH: _nothing,
    op.CHDESC_OVERLAP_MULTIATTACH: _nothing,
}

_unhandled = [spec.name for spec in op.ALL_OPCODES if spec not in APPLY_HANDLERS]
if _unhandled:
    raise RuntimeError(f"Opcodes without apply handlers: {', '.join(_unhandled)}")


def apply_opcode(opcode: ModuleOpcode, state: SystemState) -> None:
    """Apply one decoded opcode to ``state``."""
    state.opcode_index = opcode.index
    APPLY_HANDLERS[opcode.spec](opcode, state)
