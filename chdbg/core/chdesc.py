"""Change descriptors: the nodes of the write-ordering graph.

A chdesc is one pending write. Its lifecycle:

    DANGLING ──create──▶ NOOP | BIT | BYTE ◀──convert──▶ NOOP | BIT | BYTE
                                  │
                                  └──destroy──▶ DESTROY (terminal)

A DANGLING chdesc is a placeholder materialised when an opcode names an
address before that address was created. The later create opcode upgrades
the same object in place, so edges already pointing at it stay intact.

Block, owner, flags and the type-specific payload are only readable while the
chdesc is valid (NOOP, BIT or BYTE); anything else raises ChdescStateError.
"""

from __future__ import annotations

from enum import IntEnum, IntFlag
from typing import Any

from chdbg.core.errors import ChdescStateError
from chdbg.core.registry import ObjectRegistry


def hex32(value: int) -> str:
    """Render an opaque address the way trace listings show it."""
    return f"0x{value & 0xFFFFFFFF:08x}"


# ── Enums ────────────────────────────────────────────────────────────────────


class ChdescType(IntEnum):
    NOOP = 0
    BIT = 1
    BYTE = 2
    DESTROY = 3
    DANGLING = 4


class ChdescFlag(IntFlag):
    """Flag bits. Values must match the traced kernel exactly."""

    MARKED = 0x01
    ROLLBACK = 0x02
    WRITTEN = 0x04
    FREEING = 0x08
    DATA = 0x10
    BIT_NOOP = 0x20
    OVERLAP = 0x40
    SAFE_AFTER = 0x80
    INFLIGHT = 0x100
    DBWAIT = 0x8000


FLAG_ORDER: tuple[ChdescFlag, ...] = (
    ChdescFlag.MARKED,
    ChdescFlag.ROLLBACK,
    ChdescFlag.WRITTEN,
    ChdescFlag.FREEING,
    ChdescFlag.DATA,
    ChdescFlag.BIT_NOOP,
    ChdescFlag.OVERLAP,
    ChdescFlag.SAFE_AFTER,
    ChdescFlag.INFLIGHT,
    ChdescFlag.DBWAIT,
)

_KNOWN_FLAGS = 0
for _flag in FLAG_ORDER:
    _KNOWN_FLAGS |= int(_flag)


def render_flags(flags: int) -> str:
    """Render a flag word as ``"MARKED | ROLLBACK = 0x00000003"``."""
    names = [flag.name for flag in FLAG_ORDER if flags & flag]
    unknown = flags & ~_KNOWN_FLAGS & 0xFFFFFFFF
    if unknown:
        names.append(hex32(unknown))
    if not names:
        return hex32(flags)
    return " | ".join(names) + " = " + hex32(flags)


# ── Chdesc ───────────────────────────────────────────────────────────────────


class Chdesc:
    """One change descriptor, identified by its traced address."""

    def __init__(self, address: int, created_at: int = -1) -> None:
        self.address = address
        self.created_at = created_at
        self.type = ChdescType.DANGLING

        self._block = 0
        self._owner = 0
        self._flags = 0
        self._offset = 0
        self._xor = 0
        self._length = 0

        self._free_prev: Chdesc | None = None
        self._free_next: Chdesc | None = None

        self.befores: ObjectRegistry[Chdesc] = ObjectRegistry("before")
        self.afters: ObjectRegistry[Chdesc] = ObjectRegistry("after")
        self.locations: set[int] = set()

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    def noop(cls, address: int, block: int, owner: int, created_at: int = -1) -> Chdesc:
        chdesc = cls(address, created_at)
        chdesc.realize(block, owner, created_at)
        return chdesc

    @classmethod
    def bit(
        cls, address: int, block: int, owner: int, offset: int, xor: int, created_at: int = -1
    ) -> Chdesc:
        chdesc = cls(address, created_at)
        chdesc.realize_bit(block, owner, offset, xor, created_at)
        return chdesc

    @classmethod
    def byte(
        cls, address: int, block: int, owner: int, offset: int, length: int, created_at: int = -1
    ) -> Chdesc:
        chdesc = cls(address, created_at)
        chdesc.realize_byte(block, owner, offset, length, created_at)
        return chdesc

    def realize(self, block: int, owner: int, created_at: int = -1) -> None:
        """Upgrade a DANGLING placeholder to a NOOP in place."""
        if self.type != ChdescType.DANGLING:
            raise ChdescStateError(
                f"Attempt to create {hex32(self.address)} which is already {self.type.name}"
            )
        self.type = ChdescType.NOOP
        self._block = block
        self._owner = owner
        self._flags = 0
        if created_at >= 0:
            self.created_at = created_at

    def realize_bit(self, block: int, owner: int, offset: int, xor: int, created_at: int = -1) -> None:
        self.realize(block, owner, created_at)
        self.convert_bit(offset, xor)
        # The write has not been applied to the block yet
        self.set_flags(ChdescFlag.ROLLBACK)

    def realize_byte(
        self, block: int, owner: int, offset: int, length: int, created_at: int = -1
    ) -> None:
        self.realize(block, owner, created_at)
        self.convert_byte(offset, length)
        self.set_flags(ChdescFlag.ROLLBACK)

    # ── State guards ─────────────────────────────────────────────────────

    @property
    def is_valid(self) -> bool:
        return self.type in (ChdescType.NOOP, ChdescType.BIT, ChdescType.BYTE)

    @property
    def is_dangling(self) -> bool:
        return self.type == ChdescType.DANGLING

    @property
    def is_destroyed(self) -> bool:
        return self.type == ChdescType.DESTROY

    def _require_valid(self, action: str) -> None:
        if not self.is_valid:
            raise ChdescStateError(
                f"{action} of invalid chdesc {hex32(self.address)} ({self.type.name})"
            )

    def _require_live(self, action: str) -> None:
        if self.is_destroyed:
            raise ChdescStateError(f"{action} of destroyed chdesc {hex32(self.address)}")

    # ── Fields ───────────────────────────────────────────────────────────

    @property
    def block(self) -> int:
        self._require_valid("Query for block")
        return self._block

    @block.setter
    def block(self, value: int) -> None:
        self._require_valid("Attempt to set block")
        self._block = value

    @property
    def owner(self) -> int:
        self._require_valid("Query for owner")
        return self._owner

    @owner.setter
    def owner(self, value: int) -> None:
        self._require_valid("Attempt to set owner")
        self._owner = value

    @property
    def flags(self) -> int:
        self._require_valid("Query for flags")
        return self._flags

    def set_flags(self, flags: int) -> None:
        self._require_valid("Attempt to set flags")
        self._flags |= int(flags)

    def clear_flags(self, flags: int) -> None:
        self._require_valid("Attempt to clear flags")
        self._flags &= ~int(flags)

    def has_flag(self, flag: int) -> bool:
        return bool(self.flags & flag)

    @property
    def offset(self) -> int:
        if self.type not in (ChdescType.BIT, ChdescType.BYTE):
            raise ChdescStateError(f"Query for offset of non-BIT/BYTE chdesc {hex32(self.address)}")
        return self._offset

    @offset.setter
    def offset(self, value: int) -> None:
        if self.type not in (ChdescType.BIT, ChdescType.BYTE):
            raise ChdescStateError(f"Attempt to set offset of non-BIT/BYTE chdesc {hex32(self.address)}")
        self._offset = value

    @property
    def xor(self) -> int:
        if self.type != ChdescType.BIT:
            raise ChdescStateError(f"Query for xor of non-BIT chdesc {hex32(self.address)}")
        return self._xor

    @property
    def length(self) -> int:
        if self.type != ChdescType.BYTE:
            raise ChdescStateError(f"Query for length of non-BYTE chdesc {hex32(self.address)}")
        return self._length

    @length.setter
    def length(self, value: int) -> None:
        if self.type != ChdescType.BYTE:
            raise ChdescStateError(f"Attempt to set length of non-BYTE chdesc {hex32(self.address)}")
        self._length = value

    # ── Type conversion ──────────────────────────────────────────────────

    def convert_noop(self) -> None:
        self._require_valid("Attempt to change type")
        self.type = ChdescType.NOOP
        self._offset = self._xor = self._length = 0

    def convert_bit(self, offset: int, xor: int) -> None:
        self._require_valid("Attempt to change type")
        self.type = ChdescType.BIT
        self._offset = offset
        self._xor = xor
        self._length = 0

    def convert_byte(self, offset: int, length: int) -> None:
        self._require_valid("Attempt to change type")
        self.type = ChdescType.BYTE
        self._offset = offset
        self._length = length
        self._xor = 0

    def destroy(self) -> None:
        self._require_valid("Attempt to destroy")
        self.type = ChdescType.DESTROY

    # ── Edges ────────────────────────────────────────────────────────────

    def add_before(self, target: Chdesc) -> None:
        self._require_live("Attempt to add before")
        self.befores.add(target.address, target)

    def add_after(self, target: Chdesc) -> None:
        self._require_live("Attempt to add after")
        self.afters.add(target.address, target)

    def rem_before(self, address: int) -> Chdesc | None:
        self._require_live("Attempt to remove before")
        return self.befores.remove(address)

    def rem_after(self, address: int) -> Chdesc | None:
        self._require_live("Attempt to remove after")
        return self.afters.remove(address)

    def weak_retain(self, location: int) -> None:
        self._require_valid("Attempt to weak retain")
        self.locations.add(location)

    def weak_forget(self, location: int) -> None:
        self._require_valid("Attempt to weak forget")
        self.locations.discard(location)

    # ── Free list ────────────────────────────────────────────────────────

    @property
    def free_prev(self) -> Chdesc | None:
        return self._free_prev

    @free_prev.setter
    def free_prev(self, value: Chdesc | None) -> None:
        self._require_valid("Attempt to set free_prev")
        self._free_prev = value

    @property
    def free_next(self) -> Chdesc | None:
        return self._free_next

    @free_next.setter
    def free_next(self, value: Chdesc | None) -> None:
        self._require_valid("Attempt to set free_next")
        self._free_next = value

    # ── Export ───────────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        """Plain-data view of every field, independent of validity."""
        return {
            "address": self.address,
            "type": self.type.name,
            "block": self._block,
            "owner": self._owner,
            "flags": self._flags,
            "offset": self._offset,
            "xor": self._xor,
            "length": self._length,
            "created_at": self.created_at,
            "free_prev": self._free_prev.address if self._free_prev else None,
            "free_next": self._free_next.address if self._free_next else None,
            "befores": [(key, count) for key, _, count in self.befores.items()],
            "afters": [(key, count) for key, _, count in self.afters.items()],
            "locations": sorted(self.locations),
        }

    def __str__(self) -> str:
        value = f"[chdesc {hex32(self.address)}: "
        if self.is_valid:
            value += f"block {hex32(self._block)}, owner {hex32(self._owner)}, "
        if self.type == ChdescType.NOOP:
            value += "NOOP"
        elif self.type == ChdescType.BIT:
            value += f"BIT, offset {self._offset}, xor {hex32(self._xor)}"
        elif self.type == ChdescType.BYTE:
            value += f"BYTE, offset {self._offset}, length {self._length}"
        elif self.type == ChdescType.DESTROY:
            value += "DESTROYED"
        else:
            value += "DANGLING"
        return value + "]"

    def __repr__(self) -> str:
        return f"<Chdesc {hex32(self.address)} {self.type.name}>"
