"""Reconstructed system state.

SystemState owns every bdesc and chdesc reachable at one point of a trace,
plus the annotation tables filled in by info opcodes:

  - bdescs:        strict registry of live block descriptors
  - chdescs:       strict registry of live change descriptors
  - free_head:     head of the chdesc free list (or None)
  - bd_names:      block device address -> name
  - block_numbers: block address -> (number, count) for display
  - labels:        chdesc address -> annotation labels
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from chdbg.core.chdesc import Chdesc, hex32
from chdbg.core.registry import ObjectRegistry


@dataclass
class Bdesc:
    """A cached disk block. Only used to correlate chdescs for display."""

    address: int
    ddesc: int
    number: int
    count: int
    ref_count: int = 0
    ar_count: int = 0
    dd_count: int = 0
    wrapped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "ddesc": self.ddesc,
            "number": self.number,
            "count": self.count,
            "ref_count": self.ref_count,
            "ar_count": self.ar_count,
            "dd_count": self.dd_count,
            "wrapped": self.wrapped,
        }

    def __str__(self) -> str:
        return (
            f"[bdesc {hex32(self.address)}: ddesc {hex32(self.ddesc)}, "
            f"number {self.number}, count {self.count}]"
        )


@dataclass
class SystemState:
    """Every object alive at the current replay position."""

    bdescs: ObjectRegistry[Bdesc] = field(
        default_factory=lambda: ObjectRegistry("bdesc", strict=True)
    )
    chdescs: ObjectRegistry[Chdesc] = field(
        default_factory=lambda: ObjectRegistry("chdesc", strict=True)
    )
    free_head: Chdesc | None = None
    bd_names: dict[int, str] = field(default_factory=dict)
    block_numbers: dict[int, tuple[int, int]] = field(default_factory=dict)
    labels: dict[int, list[str]] = field(default_factory=dict)
    ar_pool_depth: int = 0
    # Index of the opcode currently being applied, stamped onto new chdescs
    opcode_index: int = -1

    # ── Bdescs ───────────────────────────────────────────────────────────

    def add_bdesc(self, bdesc: Bdesc) -> None:
        self.bdescs.add(bdesc.address, bdesc)

    def lookup_bdesc(self, address: int) -> Bdesc | None:
        return self.bdescs.lookup(address)

    def remove_bdesc(self, address: int) -> Bdesc | None:
        return self.bdescs.discard(address)

    # ── Chdescs ──────────────────────────────────────────────────────────

    def add_chdesc(self, chdesc: Chdesc) -> None:
        self.chdescs.add(chdesc.address, chdesc)

    def lookup_chdesc(self, address: int) -> Chdesc | None:
        return self.chdescs.lookup(address)

    def reference_chdesc(self, address: int) -> Chdesc | None:
        """Resolve an edge or free-list target, materialising a placeholder.

        Address 0 is the null pointer and resolves to None.
        """
        if address == 0:
            return None
        chdesc = self.chdescs.lookup(address)
        if chdesc is None:
            chdesc = Chdesc(address, self.opcode_index)
            self.chdescs.add(address, chdesc)
        return chdesc

    def remove_chdesc(self, address: int) -> Chdesc | None:
        self.labels.pop(address, None)
        return self.chdescs.discard(address)

    @property
    def chdesc_count(self) -> int:
        return len(self.chdescs)

    def dangling(self) -> list[Chdesc]:
        return [chdesc for chdesc in self.chdescs.values() if chdesc.is_dangling]

    def free_list(self) -> list[Chdesc]:
        """Walk the free list from its head, stopping at the first repeat."""
        seen: set[int] = set()
        members: list[Chdesc] = []
        chdesc = self.free_head
        while chdesc is not None and id(chdesc) not in seen:
            seen.add(id(chdesc))
            members.append(chdesc)
            chdesc = chdesc.free_next
        return members

    # ── Annotations ──────────────────────────────────────────────────────

    def add_label(self, address: int, label: str) -> None:
        self.labels.setdefault(address, []).append(label)

    def block_name(self, block: int) -> str:
        """Display name for a block: its number when known, else its address."""
        numbered = self.block_numbers.get(block)
        if numbered is None:
            bdesc = self.bdescs.lookup(block)
            if bdesc is not None:
                numbered = (bdesc.number, bdesc.count)
        if numbered is None:
            return hex32(block)
        number, count = numbered
        name = f"#{number}"
        if count > 1:
            name += f" (x{count})"
        return f"{name} ({hex32(block)})"

    def owner_name(self, owner: int) -> str:
        return self.bd_names.get(owner, hex32(owner))

    # ── Export ───────────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        """Deterministic plain-data image of the whole state."""
        return {
            "bdescs": {
                key: (bdesc.to_dict(), count) for key, bdesc, count in self.bdescs.items()
            },
            "chdescs": {
                key: (chdesc.snapshot(), count) for key, chdesc, count in self.chdescs.items()
            },
            "free_head": self.free_head.address if self.free_head else None,
            "bd_names": dict(self.bd_names),
            "block_numbers": dict(self.block_numbers),
            "labels": {key: list(value) for key, value in self.labels.items()},
            "ar_pool_depth": self.ar_pool_depth,
        }

    def __str__(self) -> str:
        return f"SystemState({len(self.bdescs)} bdescs, {len(self.chdescs)} chdescs)"
