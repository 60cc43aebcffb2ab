"""Call-stack interning.

Many opcodes are emitted from the same call site, so their captured stacks
are identical. StackTable hands out one shared CallStack per distinct frame
sequence, keyed by a structural hash with full comparison on collision. It
is a cache: a miss only costs memory, never correctness.
"""

from __future__ import annotations

from dataclasses import dataclass

STACK_HASH_SEED = 0x5AFEDA7A


def stack_hash(frames: tuple[int, ...]) -> int:
    """32-bit structural hash of a frame sequence (0 for an empty stack)."""
    if not frames:
        return 0
    value = STACK_HASH_SEED
    for address in frames:
        value = ((value * 37) ^ address) & 0xFFFFFFFF
    return value


@dataclass(frozen=True, eq=True)
class CallStack:
    frames: tuple[int, ...]
    hash: int

    def __len__(self) -> int:
        return len(self.frames)

    def __iter__(self):
        return iter(self.frames)

    def __getitem__(self, index: int) -> int:
        return self.frames[index]


EMPTY_STACK = CallStack((), 0)


class StackTable:
    """Per-trace interning table for call stacks."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._buckets: dict[int, list[CallStack]] = {}
        self.hits = 0
        self.misses = 0

    def intern(self, frames: list[int] | tuple[int, ...]) -> CallStack:
        frames = tuple(frames)
        if not frames:
            return EMPTY_STACK
        digest = stack_hash(frames)
        if not self.enabled:
            return CallStack(frames, digest)
        bucket = self._buckets.setdefault(digest, [])
        for stack in bucket:
            if stack.frames == frames:
                self.hits += 1
                return stack
        stack = CallStack(frames, digest)
        bucket.append(stack)
        self.misses += 1
        return stack

    def clear(self) -> None:
        self._buckets.clear()
        self.hits = self.misses = 0

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._buckets.values())
