"""State renderer.

Emits one node per live chdesc and one edge per dependency:

    node style     fill by type: BIT springgreen1, BYTE slateblue1,
                   DESTROY orange, DANGLING red
                   ROLLBACK -> dashed+bold, MARKED -> bold red outline,
                   FREEING -> red text, else WRITTEN -> blue text
    befores        self -> before            black
    afters         after -> self             gray
    weak refs      location box -> self      green
    free list      prev -> self              orange
                   self -> next              red (render_free only)

Edges may point at chdescs that are no longer in the registry (destroyed but
still referenced); those get a node of their own so every edge has both ends.
"""

from __future__ import annotations

import logging

from chdbg.core.chdesc import Chdesc, ChdescFlag, ChdescType, hex32
from chdbg.core.state import SystemState
from chdbg.render.grouping import NONE_GROUPER, GrouperFactory
from chdbg.render.sink import GraphSink, node_id
from chdbg.replay.debugger import Debugger

logger = logging.getLogger(__name__)

FILL_COLORS: dict[ChdescType, str] = {
    ChdescType.BIT: "springgreen1",
    ChdescType.BYTE: "slateblue1",
    ChdescType.DESTROY: "orange",
    ChdescType.DANGLING: "red",
}

BEFORE_COLOR = "black"
AFTER_COLOR = "gray"
WEAK_COLOR = "green"
FREE_PREV_COLOR = "orange"
FREE_NEXT_COLOR = "red"


def node_label(chdesc: Chdesc, state: SystemState) -> str:
    label = hex32(chdesc.address)
    if chdesc.type == ChdescType.BIT:
        label += f"\n[{chdesc.offset}:{hex32(chdesc.xor)}]"
    elif chdesc.type == ChdescType.BYTE:
        label += f"\n[{chdesc.offset}:{chdesc.length}]"
    if chdesc.is_valid:
        label += f"\n{state.block_name(chdesc.block)}"
        label += f"\n{state.owner_name(chdesc.owner)}"
    for text in state.labels.get(chdesc.address, ()):
        label += f"\n\"{text}\""
    return label


def node_attrs(chdesc: Chdesc) -> dict[str, str]:
    attrs: dict[str, str] = {}
    styles: list[str] = []
    fill = FILL_COLORS.get(chdesc.type)
    if fill is not None:
        styles.append("filled")
        attrs["fillcolor"] = fill
    if chdesc.is_valid:
        flags = chdesc.flags
        if flags & ChdescFlag.ROLLBACK:
            styles += ["dashed", "bold"]
        if flags & ChdescFlag.MARKED:
            styles.append("bold")
            attrs["color"] = "red"
        if flags & ChdescFlag.FREEING:
            attrs["fontcolor"] = "red"
        elif flags & ChdescFlag.WRITTEN:
            attrs["fontcolor"] = "blue"
    if styles:
        attrs["style"] = ",".join(dict.fromkeys(styles))
    return attrs


class StateRenderer:
    """Walks one SystemState and emits it to a GraphSink."""

    def __init__(
        self,
        state: SystemState,
        grouper: GrouperFactory = NONE_GROUPER,
        render_free: bool = False,
    ) -> None:
        self.state = state
        self.grouper = grouper
        self.render_free = render_free
        self._emitted: set[str] = set()

    def render(self, sink: GraphSink, title: str = "", name: str = "chdescs") -> None:
        self._emitted.clear()
        sink.begin_graph(name, title)

        grouping = self.grouper.new_instance(self.state)
        for chdesc in self.state.chdescs.values():
            self._emit_node(chdesc, sink)
            grouping.add(chdesc)
        for chdesc in self.state.chdescs.values():
            self._emit_edges(chdesc, sink)

        if self.state.free_head is not None:
            head = self.state.free_head
            self._emit_node(head, sink)
            sink.node("free_head", "free list", shape="box", style="dashed")
            sink.edge("free_head", node_id(head), color=FREE_PREV_COLOR, style="dashed")

        grouping.render("", sink)
        sink.end_graph()
        logger.debug("Rendered %d chdescs with grouping %s", self.state.chdesc_count, self.grouper)

    def _emit_node(self, chdesc: Chdesc, sink: GraphSink) -> str:
        ident = node_id(chdesc)
        if ident not in self._emitted:
            self._emitted.add(ident)
            sink.node(ident, node_label(chdesc, self.state), **node_attrs(chdesc))
        return ident

    def _emit_edges(self, chdesc: Chdesc, sink: GraphSink) -> None:
        ident = node_id(chdesc)
        for before in chdesc.befores:
            sink.edge(ident, self._emit_node(before, sink), color=BEFORE_COLOR)
        for after in chdesc.afters:
            sink.edge(self._emit_node(after, sink), ident, color=AFTER_COLOR)
        for location in sorted(chdesc.locations):
            weak = f"loc{hex32(location)}"
            if weak not in self._emitted:
                self._emitted.add(weak)
                sink.node(weak, hex32(location), shape="box", style="filled", fillcolor="yellow")
            sink.edge(weak, ident, color=WEAK_COLOR)
        if chdesc.free_prev is not None:
            sink.edge(self._emit_node(chdesc.free_prev, sink), ident, color=FREE_PREV_COLOR)
        if self.render_free and chdesc.free_next is not None:
            sink.edge(ident, self._emit_node(chdesc.free_next, sink), color=FREE_NEXT_COLOR)


def render_title(debugger: Debugger) -> str:
    if debugger.applied == 0:
        return f"{debugger.name}: initial state"
    opcode = debugger.get_opcode(debugger.applied - 1)
    return f"{debugger.name}: after #{opcode.index} {opcode}"


def render_state(
    source: Debugger | SystemState,
    sink: GraphSink,
    grouper: GrouperFactory = NONE_GROUPER,
    render_free: bool = False,
    title: str | None = None,
) -> None:
    """Render a debugger's current state (or a bare SystemState) to ``sink``."""
    if isinstance(source, Debugger):
        state = source.state
        if title is None:
            title = render_title(source)
    else:
        state = source
    StateRenderer(state, grouper, render_free).render(sink, title or "")
