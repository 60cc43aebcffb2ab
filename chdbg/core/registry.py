"""Reference-counted object registry.

Maps an opaque 32-bit address to one object plus a reference count. Adding
an address that is already present bumps its count (lenient registries) or
raises ``DuplicateRegistration`` (strict registries). Removing decrements
and only drops the mapping once the count reaches zero.

Iteration yields each object once per live reference, in first-insertion
order, so a chdesc added twice to a dependency collection shows up twice.

Usage:
    befores = ObjectRegistry[Chdesc]("before")
    befores.add(target.address, target)
    for chdesc in befores:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Iterator, TypeVar

from chdbg.core.errors import DuplicateRegistration

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    obj: T
    count: int = 1


class ObjectRegistry(Generic[T]):
    """Address-keyed multiset of objects."""

    def __init__(self, kind: str = "object", strict: bool = False) -> None:
        self.kind = kind
        self.strict = strict
        self._entries: dict[int, _Entry[T]] = {}

    def add(self, key: int, obj: T) -> int:
        """Register ``obj`` under ``key`` and return the new reference count."""
        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = _Entry(obj)
            return 1
        if self.strict:
            raise DuplicateRegistration(self.kind, key)
        entry.count += 1
        return entry.count

    def remove(self, key: int) -> T | None:
        """Drop one reference to ``key``; returns the object, or None if absent."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        entry.count -= 1
        if entry.count <= 0:
            del self._entries[key]
        return entry.obj

    def discard(self, key: int) -> T | None:
        """Drop every reference to ``key`` at once."""
        entry = self._entries.pop(key, None)
        return entry.obj if entry is not None else None

    def lookup(self, key: int) -> T | None:
        entry = self._entries.get(key)
        return entry.obj if entry is not None else None

    def count(self, key: int) -> int:
        entry = self._entries.get(key)
        return entry.count if entry is not None else 0

    def keys(self) -> list[int]:
        return list(self._entries)

    def values(self) -> list[T]:
        """Distinct objects, one per key."""
        return [entry.obj for entry in self._entries.values()]

    def items(self) -> Iterator[tuple[int, T, int]]:
        for key, entry in self._entries.items():
            yield key, entry.obj, entry.count

    @property
    def total(self) -> int:
        """Sum of all reference counts."""
        return sum(entry.count for entry in self._entries.values())

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[T]:
        # Snapshot so callers may mutate the registry while walking it
        for entry in list(self._entries.values()):
            for _ in range(entry.count):
                yield entry.obj

    def __repr__(self) -> str:
        mode = "strict" if self.strict else "lenient"
        return f"ObjectRegistry({self.kind!r}, {mode}, keys={len(self)}, refs={self.total})"
