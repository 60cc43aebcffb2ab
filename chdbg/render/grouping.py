"""Composable clustering of chdescs.

A GrouperFactory is a recursive strategy: either the leaf ("none"), which
lists its members without clustering, or a grouping by block or by owner
wrapped around a sub-strategy. Nesting the factories nests the clusters:

    by_block(by_owner())   ->  block[red]-owner[blue]
        cluster block #12
            cluster module sda
                ch0x...
        (chdescs on block 0 are rendered without a block cluster)

Membership of the innermost groups does not depend on the nesting order,
only the cluster hierarchy in the output does.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from chdbg.core.chdesc import Chdesc
from chdbg.core.state import SystemState
from chdbg.core.types import GroupingMode
from chdbg.render.sink import GraphSink, node_id


class GroupBy(str, Enum):
    BLOCK = "block"
    OWNER = "owner"


@dataclass(frozen=True)
class GrouperFactory:
    """Grouping strategy; ``by=None`` is the leaf."""

    by: GroupBy | None = None
    color: str = ""
    sub: GrouperFactory | None = None

    @property
    def name(self) -> str:
        if self.by is None:
            return "none"
        name = f"{self.by.value}[{self.color}]"
        if self.sub is not None and self.sub.by is not None:
            name += "-" + self.sub.name
        return name

    def new_instance(self, state: SystemState) -> Grouper:
        return Grouper(self, state)

    def __str__(self) -> str:
        return self.name


NONE_GROUPER = GrouperFactory()


def by_block(sub: GrouperFactory = NONE_GROUPER, color: str = "red") -> GrouperFactory:
    return GrouperFactory(GroupBy.BLOCK, color, sub)


def by_owner(sub: GrouperFactory = NONE_GROUPER, color: str = "blue") -> GrouperFactory:
    return GrouperFactory(GroupBy.OWNER, color, sub)


def parse_grouping(
    mode: GroupingMode | str,
    block_color: str = "red",
    owner_color: str = "blue",
) -> GrouperFactory:
    """Build the factory for a grouping option such as ``"block-owner"``."""
    mode = GroupingMode(mode)
    if mode == GroupingMode.NONE:
        return NONE_GROUPER
    if mode == GroupingMode.BLOCK:
        return by_block(color=block_color)
    if mode == GroupingMode.OWNER:
        return by_owner(color=owner_color)
    if mode == GroupingMode.BLOCK_OWNER:
        return by_block(by_owner(color=owner_color), block_color)
    return by_owner(by_block(color=block_color), owner_color)


class Grouper:
    """Accumulates chdescs for one render pass under a GrouperFactory."""

    def __init__(self, factory: GrouperFactory, state: SystemState) -> None:
        self.factory = factory
        self.state = state
        # Insertion-ordered sets
        self._members: dict[Chdesc, None] = {}
        self._groups: dict[int, Grouper] = {}

    def group_key(self, chdesc: Chdesc) -> int:
        if not chdesc.is_valid:
            return 0
        if self.factory.by == GroupBy.BLOCK:
            return chdesc.block
        return chdesc.owner

    def add(self, chdesc: Chdesc) -> None:
        if self.factory.by is None:
            self._members[chdesc] = None
            return
        key = self.group_key(chdesc)
        subgrouper = self._groups.get(key)
        if subgrouper is None:
            subgrouper = (self.factory.sub or NONE_GROUPER).new_instance(self.state)
            self._groups[key] = subgrouper
        subgrouper.add(chdesc)

    def members(self) -> list[Chdesc]:
        if self.factory.by is None:
            return list(self._members)
        found: list[Chdesc] = []
        for subgrouper in self._groups.values():
            found.extend(subgrouper.members())
        return found

    def group_label(self, key: int) -> str:
        if self.factory.by == GroupBy.BLOCK:
            return self.state.block_name(key)
        return "module " + self.state.owner_name(key)

    def render(self, prefix: str, sink: GraphSink) -> None:
        if self.factory.by is None:
            for chdesc in self._members:
                sink.member(node_id(chdesc))
            return
        for key, subgrouper in self._groups.items():
            cluster = f"{prefix}_{self.factory.by.value}{key:08x}"
            if key != 0:
                sink.begin_cluster(cluster, self.group_label(key), self.factory.color)
            subgrouper.render(cluster, sink)
            if key != 0:
                sink.end_cluster()
