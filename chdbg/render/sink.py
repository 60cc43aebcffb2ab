"""Graph sinks.

The renderer describes the chdesc graph as a stream of events:

    begin_graph
      node / edge              (any order)
      begin_cluster            (nestable)
        member                 (node placed in the innermost open cluster)
      end_cluster
    end_graph

Sinks decide what to do with them. RecordingSink keeps the events for
inspection; DotSink writes Graphviz text for an external layout tool.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, TextIO

from chdbg.core.chdesc import Chdesc, hex32


def node_id(chdesc: Chdesc) -> str:
    """Stable identifier of a chdesc within one render pass.

    Includes the creating opcode so a destroyed chdesc and a later one reusing
    its address stay distinct.
    """
    if chdesc.created_at >= 0:
        return f"ch{hex32(chdesc.address)}@{chdesc.created_at}"
    return f"ch{hex32(chdesc.address)}"


class GraphSink(Protocol):
    def begin_graph(self, name: str, title: str = "") -> None: ...

    def end_graph(self) -> None: ...

    def node(self, node: str, label: str, **attrs: str) -> None: ...

    def edge(self, source: str, target: str, **attrs: str) -> None: ...

    def begin_cluster(self, cluster: str, label: str, color: str) -> None: ...

    def end_cluster(self) -> None: ...

    def member(self, node: str) -> None: ...


# ── Recording ────────────────────────────────────────────────────────────────


@dataclass
class GraphEvent:
    kind: str
    args: tuple[str, ...] = ()
    attrs: dict[str, str] = field(default_factory=dict)


class RecordingSink:
    """Keeps every event; offers lookups over what was rendered."""

    def __init__(self) -> None:
        self.events: list[GraphEvent] = []
        self._open: list[str] = []
        self.cluster_labels: dict[str, str] = {}
        self.memberships: dict[str, tuple[str, ...]] = {}

    def begin_graph(self, name: str, title: str = "") -> None:
        self.events.append(GraphEvent("begin_graph", (name, title)))

    def end_graph(self) -> None:
        self.events.append(GraphEvent("end_graph"))

    def node(self, node: str, label: str, **attrs: str) -> None:
        self.events.append(GraphEvent("node", (node, label), dict(attrs)))

    def edge(self, source: str, target: str, **attrs: str) -> None:
        self.events.append(GraphEvent("edge", (source, target), dict(attrs)))

    def begin_cluster(self, cluster: str, label: str, color: str) -> None:
        self._open.append(cluster)
        self.cluster_labels[cluster] = label
        self.events.append(GraphEvent("begin_cluster", (cluster, label), {"color": color}))

    def end_cluster(self) -> None:
        self._open.pop()
        self.events.append(GraphEvent("end_cluster"))

    def member(self, node: str) -> None:
        self.memberships[node] = tuple(self._open)
        self.events.append(GraphEvent("member", (node,)))

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def nodes(self) -> dict[str, GraphEvent]:
        return {event.args[0]: event for event in self.events if event.kind == "node"}

    @property
    def edges(self) -> list[GraphEvent]:
        return [event for event in self.events if event.kind == "edge"]

    def edges_colored(self, color: str) -> list[tuple[str, str]]:
        return [
            (event.args[0], event.args[1])
            for event in self.edges
            if event.attrs.get("color") == color
        ]

    def cluster_path(self, node: str) -> tuple[str, ...]:
        """Labels of the clusters enclosing ``node``, outermost first."""
        return tuple(self.cluster_labels[cluster] for cluster in self.memberships.get(node, ()))

    def leaf_groups(self) -> set[frozenset[str]]:
        """Members partitioned by the set of cluster labels enclosing them."""
        groups: dict[frozenset[str], set[str]] = {}
        for node in self.memberships:
            groups.setdefault(frozenset(self.cluster_path(node)), set()).add(node)
        return {frozenset(members) for members in groups.values()}


# ── Graphviz text ────────────────────────────────────────────────────────────


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n") + '"'


class DotSink:
    """Writes the event stream as Graphviz ``dot`` source."""

    def __init__(self, output: TextIO, rankdir: str = "BT") -> None:
        self.output = output
        self.rankdir = rankdir

    def _write(self, line: str) -> None:
        self.output.write(line + "\n")

    def begin_graph(self, name: str, title: str = "") -> None:
        self._write(f"digraph {_quote(name)} {{")
        self._write("nodesep=0.25;")
        self._write("ranksep=0.25;")
        self._write(f"rankdir={self.rankdir};")
        self._write("node [shape=ellipse,color=black,fontsize=10];")
        if title:
            self._write(f"label={_quote(title)};")
            self._write("labelloc=t;")

    def end_graph(self) -> None:
        self._write("}")

    def node(self, node: str, label: str, **attrs: str) -> None:
        fields = [f"label={_quote(label)}"]
        fields += [f"{key}={_quote(value)}" for key, value in attrs.items()]
        self._write(f"{_quote(node)} [{','.join(fields)}]")

    def edge(self, source: str, target: str, **attrs: str) -> None:
        fields = ",".join(f"{key}={_quote(value)}" for key, value in attrs.items())
        suffix = f" [{fields}]" if fields else ""
        self._write(f"{_quote(source)} -> {_quote(target)}{suffix}")

    def begin_cluster(self, cluster: str, label: str, color: str) -> None:
        self._write(f"subgraph {_quote('cluster' + cluster)} {{")
        self._write(f"label={_quote(label)};")
        self._write(f"color={_quote(color)};")
        self._write("labeljust=r;")

    def end_cluster(self) -> None:
        self._write("}")

    def member(self, node: str) -> None:
        self._write(_quote(node))
