"""Graph queries over diagrams, backed by networkx."""

from __future__ import annotations

import networkx as nx

from flowdelta.diagram.differ import DiagramDiff
from flowdelta.diagram.models import ChangeClass, DiagramGraph


def to_networkx(graph: DiagramGraph) -> nx.MultiDiGraph:
    """Convert a DiagramGraph into a networkx multigraph.

    Nodes carry label/shape/group attributes; edges carry label, arrow and
    their index in `graph.edges`. Subgraph endpoints become nodes of type
    "group".
    """
    g = nx.MultiDiGraph(kind=graph.kind.value)
    for node in graph.nodes:
        g.add_node(node.id, type="node", label=node.label, shape=node.shape, group=node.group)
    for group in graph.groups:
        if not g.has_node(group.id):
            g.add_node(group.id, type="group", label=group.title or group.id)
    for index, edge in enumerate(graph.edges):
        g.add_edge(edge.source, edge.target, key=index, label=edge.label, arrow=edge.arrow, index=index)
    return g


class DiagramQuery:
    """Reachability queries over one diagram."""

    def __init__(self, graph: DiagramGraph) -> None:
        self.diagram = graph
        self.graph = to_networkx(graph)

    def downstream_of(self, node_id: str, max_depth: int | None = None) -> list[str]:
        """Nodes reachable from `node_id`, nearest first."""
        if not self.graph.has_node(node_id):
            return []
        lengths = nx.single_source_shortest_path_length(self.graph, node_id, cutoff=max_depth)
        return [n for n, _ in sorted(lengths.items(), key=lambda kv: (kv[1], kv[0])) if n != node_id]

    def upstream_of(self, node_id: str, max_depth: int | None = None) -> list[str]:
        """Nodes that can reach `node_id`, nearest first."""
        if not self.graph.has_node(node_id):
            return []
        lengths = nx.single_source_shortest_path_length(
            self.graph.reverse(copy=False), node_id, cutoff=max_depth
        )
        return [n for n, _ in sorted(lengths.items(), key=lambda kv: (kv[1], kv[0])) if n != node_id]


def change_footprint(diff: DiagramDiff, max_depth: int = 3) -> dict:
    """Summarize how far a diagram change reaches.

    Returns a dict with:
    - touched: ids of added or changed nodes, plus endpoints of added or
      changed edges (in the new diagram)
    - downstream: unchanged nodes reachable from a touched node
    - removed: keys of removed nodes
    - ratio: share of the new diagram's nodes that are touched or downstream
    """
    new_classes = {d.new_id: d.change for d in diff.node_deltas if d.new_id is not None}
    touched: set[str] = {
        node_id
        for node_id, change in new_classes.items()
        if change in (ChangeClass.ADDED, ChangeClass.CHANGED)
    }
    for delta in diff.edge_deltas:
        if delta.new_index is None or delta.change == ChangeClass.UNCHANGED:
            continue
        edge = diff.new.edges[delta.new_index]
        touched.update(e for e in (edge.source, edge.target) if e in new_classes)

    query = DiagramQuery(diff.new)
    downstream: set[str] = set()
    for node_id in touched:
        for reached in query.downstream_of(node_id, max_depth=max_depth):
            if new_classes.get(reached) == ChangeClass.UNCHANGED:
                downstream.add(reached)

    total = len(diff.new.nodes)
    ratio = (len(touched) + len(downstream - touched)) / total if total else 0.0
    return {
        "touched": sorted(touched),
        "downstream": sorted(downstream - touched),
        "removed": [d.key for d in diff.node_deltas if d.change == ChangeClass.REMOVED],
        "ratio": round(min(ratio, 1.0), 3),
    }
