"""Structural diff between two versions of the same diagram.

Nodes pair by identity: the structural id when the caller supplies an id
mapping, the (id, label) pair otherwise. Flow links pair by
(source, target, occurrence). Sequence messages are aligned per participant
pair with a longest common subsequence, so inserting a message does not mark
every later message as moved.

Everything iterates in declaration order; the same inputs always produce the
same deltas.
"""

from __future__ import annotations

from collections.abc import Hashable, Mapping, Sequence
from typing import Any

from pydantic import BaseModel, Field

from flowdelta.diagram.fmt import unique_id
from flowdelta.diagram.models import (
    ChangeClass,
    ClassMap,
    DiagramGraph,
    DiagramKind,
    Edge,
    EdgeDelta,
    Node,
    NodeDelta,
)
from flowdelta.exceptions import DiffError


class DiagramDiff(BaseModel):
    """A pure value describing how `new` differs from `old`."""

    old: DiagramGraph
    new: DiagramGraph
    node_deltas: list[NodeDelta] = Field(default_factory=list)
    edge_deltas: list[EdgeDelta] = Field(default_factory=list)

    @property
    def node_classes(self) -> dict[str, ChangeClass]:
        return {d.key: d.change for d in self.node_deltas}

    @property
    def edge_classes(self) -> dict[str, ChangeClass]:
        return {d.key: d.change for d in self.edge_deltas}

    @property
    def kind(self) -> DiagramKind:
        return self.new.kind if not self.new.is_empty() or self.old.is_empty() else self.old.kind

    def is_unchanged(self) -> bool:
        return all(d.change == ChangeClass.UNCHANGED for d in self.node_deltas) and all(
            d.change == ChangeClass.UNCHANGED for d in self.edge_deltas
        )

    def counts(self) -> dict[str, int]:
        """Count elements per change class (nodes and edges together)."""
        counts = {c.value: 0 for c in ChangeClass}
        for d in [*self.node_deltas, *self.edge_deltas]:
            counts[d.change.value] += 1
        return counts

    def merged(self) -> tuple[DiagramGraph, ClassMap]:
        """Build the graph to render: `new` plus the removed elements of `old`.

        Removed nodes keep their diff key as id, which is collision-free
        against the ids of `new`.
        """
        base = self.new if not self.new.is_empty() or self.old.is_empty() else self.old
        class_map = ClassMap()
        nodes: list[Node] = [n.model_copy(deep=True) for n in self.new.nodes]
        edges: list[Edge] = [e.model_copy(deep=True) for e in self.new.edges]
        merged_ids: dict[str, str] = {}

        for delta in self.node_deltas:
            if delta.new_id is not None:
                class_map.nodes[delta.new_id] = delta.change
                if delta.old_id is not None:
                    merged_ids[delta.old_id] = delta.new_id
                continue
            old_node = self.old.node(delta.old_id or "")
            if old_node is None:
                continue
            nodes.append(old_node.model_copy(update={"id": delta.key, "group": None}, deep=True))
            class_map.nodes[delta.key] = ChangeClass.REMOVED
            merged_ids[old_node.id] = delta.key

        known = {n.id for n in nodes} | {g.id for g in self.new.groups}
        for delta in self.edge_deltas:
            if delta.new_index is not None:
                class_map.edges[delta.new_index] = delta.change
                continue
            old_edge = self.old.edges[delta.old_index or 0]
            endpoints = []
            for end in (old_edge.source, old_edge.target):
                mapped = merged_ids.get(end, end)
                if mapped not in known:
                    # A removed subgraph endpoint; keep it visible as a removed node
                    nodes.append(Node(id=mapped, label=end))
                    class_map.nodes[mapped] = ChangeClass.REMOVED
                    known.add(mapped)
                endpoints.append(mapped)
            update: dict[str, Any] = {"source": endpoints[0], "target": endpoints[1]}
            if base.kind == DiagramKind.SEQUENCE:
                update["sequence_index"] = len(edges)
            class_map.edges[len(edges)] = ChangeClass.REMOVED
            edges.append(old_edge.model_copy(update=update, deep=True))

        keep_presentation = base is self.new
        graph = DiagramGraph(
            kind=base.kind,
            header=base.header,
            direction=base.direction,
            nodes=nodes,
            edges=edges,
            groups=self.new.groups if keep_presentation else [],
            preamble=base.preamble,
            class_defs=base.class_defs,
            interactions=self.new.interactions if keep_presentation else [],
            fragments=self.new.fragments if keep_presentation else [],
            options=base.options,
        )
        return graph, class_map


class DiagramDiffer:
    """Computes DiagramDiffs.

    Args:
        id_map: Optional old-id -> new-id mapping. When given (even empty),
            nodes pair by structural id after mapping and a relabel is a
            change. When omitted, nodes pair by (id, label) and a relabel is
            a removal plus an addition.
    """

    def __init__(self, id_map: Mapping[str, str] | None = None) -> None:
        self.id_map = dict(id_map) if id_map is not None else None

    def diff(self, old: DiagramGraph, new: DiagramGraph) -> DiagramDiff:
        if not old.is_empty() and not new.is_empty() and old.kind != new.kind:
            raise DiffError(
                f"Cannot diff a {old.kind.value} diagram against a {new.kind.value} diagram"
            )

        old_ident = {n.id: self._old_identity(n) for n in old.nodes}
        new_ident = {n.id: self._new_identity(n) for n in new.nodes}
        node_deltas = self._diff_nodes(old, new, old_ident, new_ident)

        # Subgraph endpoints keep their own identity
        for g in old.groups:
            old_ident.setdefault(g.id, ("group", g.id))
        for g in new.groups:
            new_ident.setdefault(g.id, ("group", g.id))

        kind = new.kind if not new.is_empty() else old.kind
        if kind == DiagramKind.SEQUENCE:
            edge_map = _align_messages(old.edges, new.edges, old_ident, new_ident)
        else:
            edge_map = _pair_links(old.edges, new.edges, old_ident, new_ident)
        edge_deltas = _edge_deltas(old, new, edge_map, node_deltas)
        return DiagramDiff(old=old, new=new, node_deltas=node_deltas, edge_deltas=edge_deltas)

    def _old_identity(self, node: Node) -> Hashable:
        if self.id_map is None:
            return (node.id, node.label)
        return self.id_map.get(node.id, node.id)

    def _new_identity(self, node: Node) -> Hashable:
        if self.id_map is None:
            return (node.id, node.label)
        return node.id

    def _diff_nodes(
        self,
        old: DiagramGraph,
        new: DiagramGraph,
        old_ident: dict[str, Hashable],
        new_ident: dict[str, Hashable],
    ) -> list[NodeDelta]:
        old_by_ident = {old_ident[n.id]: n for n in old.nodes}
        matched_old: set[str] = set()
        deltas: list[NodeDelta] = []

        for node in new.nodes:
            counterpart = old_by_ident.get(new_ident[node.id])
            if counterpart is None:
                deltas.append(NodeDelta(key=node.id, new_id=node.id, change=ChangeClass.ADDED))
                continue
            matched_old.add(counterpart.id)
            same = _node_signature(old, counterpart) == _node_signature(new, node)
            deltas.append(
                NodeDelta(
                    key=node.id,
                    old_id=counterpart.id,
                    new_id=node.id,
                    change=ChangeClass.UNCHANGED if same else ChangeClass.CHANGED,
                )
            )

        used = {n.id for n in new.nodes} | {g.id for g in new.groups}
        for node in old.nodes:
            if node.id in matched_old:
                continue
            key = node.id if node.id not in used else unique_id(f"{node.id}_removed", used)
            used.add(key)
            deltas.append(NodeDelta(key=key, old_id=node.id, change=ChangeClass.REMOVED))
        return deltas


def diff(
    old: DiagramGraph, new: DiagramGraph, id_map: Mapping[str, str] | None = None
) -> DiagramDiff:
    """Diff two diagram graphs (see DiagramDiffer)."""
    return DiagramDiffer(id_map).diff(old, new)


def _node_signature(graph: DiagramGraph, node: Node) -> tuple:
    group: str | None = node.group
    if graph.kind == DiagramKind.SEQUENCE and node.group is not None:
        # Box ids are positional; compare by box title
        titles = {g.id: g.title for g in graph.groups}
        group = titles.get(node.group, node.group)
    return (node.label, node.shape, node.style, tuple(node.classes), group)


def _edge_signature(edge: Edge) -> tuple:
    return (edge.label, edge.arrow, edge.style)


# Edge pairing results: new index -> (old index | None, change)
_EdgeMap = dict[int, tuple[int | None, ChangeClass]]


def _pair_links(
    old_edges: Sequence[Edge],
    new_edges: Sequence[Edge],
    old_ident: dict[str, Hashable],
    new_ident: dict[str, Hashable],
) -> _EdgeMap:
    old_keys = _occurrence_keys(old_edges, old_ident)
    old_by_key = {key: i for i, key in enumerate(old_keys)}
    result: _EdgeMap = {}
    for j, key in enumerate(_occurrence_keys(new_edges, new_ident)):
        i = old_by_key.get(key)
        if i is None:
            result[j] = (None, ChangeClass.ADDED)
        elif _edge_signature(old_edges[i]) == _edge_signature(new_edges[j]):
            result[j] = (i, ChangeClass.UNCHANGED)
        else:
            result[j] = (i, ChangeClass.CHANGED)
    return result


def _occurrence_keys(edges: Sequence[Edge], ident: dict[str, Hashable]) -> list[tuple]:
    seen: dict[tuple, int] = {}
    keys = []
    for edge in edges:
        pair = (ident[edge.source], ident[edge.target])
        k = seen.get(pair, 0)
        seen[pair] = k + 1
        keys.append((*pair, k))
    return keys


def _align_messages(
    old_edges: Sequence[Edge],
    new_edges: Sequence[Edge],
    old_ident: dict[str, Hashable],
    new_ident: dict[str, Hashable],
) -> _EdgeMap:
    """Pair sequence messages.

    Per participant pair: an LCS over (label, arrow) anchors the messages that
    kept their relative order. Unanchored messages whose label reappears are
    reorders; what is left inside the same gap between anchors pairs up
    positionally as a relabel. A final LCS across all anchored messages flags
    the ones whose order changed relative to other participant pairs.
    """
    old_pairs: dict[tuple, list[int]] = {}
    new_pairs: dict[tuple, list[int]] = {}
    for i, e in enumerate(old_edges):
        old_pairs.setdefault((old_ident[e.source], old_ident[e.target]), []).append(i)
    for j, e in enumerate(new_edges):
        new_pairs.setdefault((new_ident[e.source], new_ident[e.target]), []).append(j)

    anchored: list[tuple[int, int]] = []
    result: _EdgeMap = {}

    for pair, new_idx in new_pairs.items():
        old_idx = old_pairs.get(pair, [])
        anchors = lcs(
            [_edge_signature(old_edges[i]) for i in old_idx],
            [_edge_signature(new_edges[j]) for j in new_idx],
        )
        anchored.extend((old_idx[a], new_idx[b]) for a, b in anchors)

        anchored_a = {a for a, _ in anchors}
        anchored_b = {b for _, b in anchors}
        free_old = [a for a in range(len(old_idx)) if a not in anchored_a]
        free_new = [b for b in range(len(new_idx)) if b not in anchored_b]

        # Same message moved within this pair
        for b in list(free_new):
            label = new_edges[new_idx[b]].label
            for a in free_old:
                if old_edges[old_idx[a]].label == label:
                    result[new_idx[b]] = (old_idx[a], ChangeClass.CHANGED)
                    free_old.remove(a)
                    free_new.remove(b)
                    break

        # Relabels: pair leftovers that sit in the same gap between anchors
        def gap(pos: int, side: int) -> int:
            return sum(1 for anchor in anchors if anchor[side] < pos)

        for b in list(free_new):
            for a in free_old:
                if gap(a, 0) == gap(b, 1):
                    result[new_idx[b]] = (old_idx[a], ChangeClass.CHANGED)
                    free_old.remove(a)
                    free_new.remove(b)
                    break

        for b in free_new:
            result[new_idx[b]] = (None, ChangeClass.ADDED)

    # Order check across pairs: anchors off the common order were moved
    by_old = sorted(anchored)
    by_new = sorted(anchored, key=lambda p: p[1])
    in_order = {by_old[a] for a, _ in lcs(by_old, by_new)}
    for old_i, new_j in anchored:
        change = ChangeClass.UNCHANGED if (old_i, new_j) in in_order else ChangeClass.CHANGED
        result[new_j] = (old_i, change)
    return result


def lcs(a: Sequence[Hashable], b: Sequence[Hashable]) -> list[tuple[int, int]]:
    """Longest common subsequence of two sequences as (index in a, index in b) pairs.

    Ties resolve toward the earliest elements of `a`, so the result is
    deterministic.
    """
    n, m = len(a), len(b)
    table = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(n - 1, -1, -1):
        for j in range(m - 1, -1, -1):
            if a[i] == b[j]:
                table[i][j] = table[i + 1][j + 1] + 1
            else:
                table[i][j] = max(table[i + 1][j], table[i][j + 1])

    pairs: list[tuple[int, int]] = []
    i = j = 0
    while i < n and j < m:
        if a[i] == b[j]:
            pairs.append((i, j))
            i += 1
            j += 1
        elif table[i + 1][j] >= table[i][j + 1]:
            i += 1
        else:
            j += 1
    return pairs


def _edge_deltas(
    old: DiagramGraph,
    new: DiagramGraph,
    edge_map: _EdgeMap,
    node_deltas: list[NodeDelta],
) -> list[EdgeDelta]:
    old_key = {d.old_id: d.key for d in node_deltas if d.old_id is not None}
    deltas: list[EdgeDelta] = []
    used: set[str] = set()

    new_keys = _edge_keys(new.edges, lambda node_id: node_id)
    matched_old: set[int] = set()
    for j, key in enumerate(new_keys):
        old_i, change = edge_map[j]
        if old_i is not None:
            matched_old.add(old_i)
        used.add(key)
        deltas.append(EdgeDelta(key=key, old_index=old_i, new_index=j, change=change))

    old_keys = _edge_keys(old.edges, lambda node_id: old_key.get(node_id, node_id))
    for i, key in enumerate(old_keys):
        if i in matched_old:
            continue
        if key in used:
            key = unique_id(f"{key}~removed", used)
        used.add(key)
        deltas.append(EdgeDelta(key=key, old_index=i, change=ChangeClass.REMOVED))
    return deltas


def _edge_keys(edges: Sequence[Edge], resolve) -> list[str]:
    """Readable keys like "A->B", with "#n" for repeated links between a pair."""
    seen: dict[tuple[str, str], int] = {}
    keys = []
    for edge in edges:
        pair = (resolve(edge.source), resolve(edge.target))
        k = seen.get(pair, 0)
        seen[pair] = k + 1
        base = f"{pair[0]}->{pair[1]}"
        keys.append(base if k == 0 else f"{base}#{k}")
    return keys
