"""Tests for structural diagram diffs and change footprints."""

from __future__ import annotations

import pytest

from flowdelta.diagram import (
    ChangeClass,
    DiagramDiffer,
    DiagramGraph,
    DiagramKind,
    DiagramQuery,
    change_footprint,
    diff,
    parse,
    render_diff,
    to_networkx,
)
from flowdelta.diagram.differ import lcs
from flowdelta.diagram.fmt import ANNOTATIONS_MARKER, WRAP_MARKER
from flowdelta.exceptions import DiffError

from conftest import LINT_FLOW, UI_SEQUENCE

U, A, C, R = (
    ChangeClass.UNCHANGED,
    ChangeClass.ADDED,
    ChangeClass.CHANGED,
    ChangeClass.REMOVED,
)


def _seq(*messages: str) -> DiagramGraph:
    body = "".join(f"    {m}\n" for m in messages)
    return parse("sequenceDiagram\n    participant A\n    participant B\n" + body)


class TestLcs:
    def test_basic(self):
        assert lcs("abcd", "acd") == [(0, 0), (2, 1), (3, 2)]

    def test_empty(self):
        assert lcs([], [1, 2]) == []

    def test_deterministic_ties(self):
        assert lcs("ab", "ba") == lcs("ab", "ba")
        assert len(lcs("ab", "ba")) == 1


class TestFlowDiff:
    def test_added_node_and_edge(self):
        old = parse("flowchart TD\n    A --> B\n")
        new = parse("flowchart TD\n    A --> B\n    B --> C\n")
        d = diff(old, new)
        assert d.node_classes == {"A": U, "B": U, "C": A}
        assert d.edge_classes == {"A->B": U, "B->C": A}
        assert not d.is_unchanged()

    def test_identical_is_unchanged(self):
        graph = parse(LINT_FLOW)
        d = diff(graph, graph)
        assert d.is_unchanged()
        assert set(d.node_classes.values()) == {U}

    def test_from_empty_all_added(self):
        graph = parse(LINT_FLOW)
        d = diff(DiagramGraph.empty(), graph)
        assert set(d.node_classes.values()) == {A}
        assert set(d.edge_classes.values()) == {A}

    def test_to_empty_all_removed(self):
        graph = parse(LINT_FLOW)
        d = diff(graph, DiagramGraph.empty())
        assert set(d.node_classes.values()) == {R}
        assert set(d.edge_classes.values()) == {R}
        assert d.kind == DiagramKind.FLOW

    def test_relabel_without_id_map(self):
        old = parse("flowchart TD\n    A[Parse] --> B\n")
        new = parse("flowchart TD\n    A[Lint] --> B\n")
        d = diff(old, new)
        assert d.node_classes == {"A": A, "B": U, "A_removed": R}
        assert d.edge_classes == {"A->B": A, "A_removed->B": R}

    def test_relabel_with_id_map(self):
        old = parse("flowchart TD\n    A[Parse] --> B\n")
        new = parse("flowchart TD\n    A[Lint] --> B\n")
        d = diff(old, new, id_map={})
        assert d.node_classes == {"A": C, "B": U}
        assert d.edge_classes == {"A->B": U}

    def test_id_map_renames(self):
        old = parse("flowchart TD\n    X[Step] --> B\n")
        new = parse("flowchart TD\n    Y[Step] --> B\n")
        d = DiagramDiffer(id_map={"X": "Y"}).diff(old, new)
        assert d.node_classes == {"Y": U, "B": U}
        assert d.edge_classes == {"Y->B": U}

    def test_edge_label_change(self):
        old = parse("flowchart TD\n    A -->|yes| B\n")
        new = parse("flowchart TD\n    A -->|no| B\n")
        assert diff(old, new).edge_classes == {"A->B": C}

    def test_repeated_links(self):
        old = parse("flowchart TD\n    A --> B\n    A --> B\n")
        new = parse("flowchart TD\n    A --> B\n")
        assert diff(old, new).edge_classes == {"A->B": U, "A->B#1": R}

    def test_style_change_is_changed(self):
        old = parse("flowchart TD\n    A --> B\n")
        new = parse("flowchart TD\n    A --> B\n    style B fill:#f00\n")
        assert diff(old, new).node_classes["B"] == C

    def test_kind_mismatch(self):
        with pytest.raises(DiffError):
            diff(parse(LINT_FLOW), parse(UI_SEQUENCE))

    def test_deterministic(self):
        old = parse("flowchart TD\n    A --> B\n    B --> C\n")
        new = parse("flowchart TD\n    A --> C\n    C --> D\n")
        assert diff(old, new) == diff(old, new)

    def test_counts(self):
        old = parse("flowchart TD\n    A --> B\n")
        new = parse("flowchart TD\n    A --> B\n    B --> C\n")
        assert diff(old, new).counts() == {"unchanged": 3, "added": 2, "changed": 0, "removed": 0}


class TestSequenceDiff:
    def test_insert_keeps_later_messages(self):
        old = parse(UI_SEQUENCE)
        new = parse(UI_SEQUENCE.replace(
            "    C-->>R: diagnostics\n", "    R->>C: check flags\n    C-->>R: diagnostics\n"
        ))
        d = diff(old, new)
        assert d.edge_classes == {"R->C": U, "R->C#1": A, "C->R": U}
        assert set(d.node_classes.values()) == {U}

    def test_removed_message(self):
        old = _seq("A->>B: x", "A->>B: y")
        new = _seq("A->>B: y")
        d = diff(old, new)
        # The surviving message keeps the plain key; the removed one gets a suffix
        assert d.edge_classes == {"A->B": U, "A->B~removed": R}
        assert d.edge_deltas[0].old_index == 1

    def test_swap_within_pair(self):
        old = _seq("A->>B: x", "A->>B: y")
        new = _seq("A->>B: y", "A->>B: x")
        assert diff(old, new).edge_classes == {"A->B": U, "A->B#1": C}

    def test_relabel_is_changed(self):
        old = _seq("A->>B: x", "B-->>A: ok")
        new = _seq("A->>B: z", "B-->>A: ok")
        assert diff(old, new).edge_classes == {"A->B": C, "B->A": U}

    def test_reorder_across_pairs(self):
        old = _seq("A->>B: x", "B->>A: y")
        new = _seq("B->>A: y", "A->>B: x")
        classes = diff(old, new).edge_classes
        assert sorted(classes.values()) == sorted([U, C])

    def test_identical(self):
        graph = parse(UI_SEQUENCE)
        assert diff(graph, graph).is_unchanged()


class TestMergedRender:
    def test_flow_delta_render(self):
        old = parse("flowchart TD\n    A --> B\n    B --> C\n")
        new = parse("flowchart TD\n    A --> B\n    B --> D\n")
        text = render_diff(diff(old, new))
        before, after = text.split(ANNOTATIONS_MARKER)
        assert "B --> D" in before
        assert "B --> C" in after
        assert "style D fill:#d4edda" in after
        assert "style C fill:#f8d7da" in after
        # Parsing strips the annotations and yields the new diagram
        assert parse(text) == new

    def test_unchanged_render_has_no_annotations(self):
        graph = parse(LINT_FLOW)
        assert ANNOTATIONS_MARKER not in render_diff(diff(graph, graph))

    def test_removed_key_collision(self):
        old = parse("flowchart TD\n    A[Parse] --> B\n")
        new = parse("flowchart TD\n    A[Lint] --> B\n")
        graph, class_map = diff(old, new).merged()
        assert graph.node_ids == ["A", "B", "A_removed"]
        assert class_map.nodes["A_removed"] == R
        assert (graph.edges[1].source, graph.edges[1].target) == ("A_removed", "B")

    def test_sequence_delta_render(self):
        old = _seq("A->>B: x", "B-->>A: ok")
        new = _seq("A->>B: x", "A->>B: more", "B-->>A: ok")
        text = render_diff(diff(old, new))
        assert WRAP_MARKER in text
        assert parse(text) == new


class TestQuery:
    def test_to_networkx(self):
        g = to_networkx(parse("flowchart TD\n    subgraph s\n    A\n    end\n    A --> B\n    B --> s\n"))
        assert g.nodes["s"]["type"] == "group"
        assert g.nodes["A"]["group"] == "s"
        assert g.number_of_edges() == 2

    def test_downstream_and_upstream(self):
        query = DiagramQuery(parse("flowchart TD\n    A --> B\n    B --> C\n    C --> D\n"))
        assert query.downstream_of("B") == ["C", "D"]
        assert query.downstream_of("B", max_depth=1) == ["C"]
        assert query.upstream_of("C") == ["B", "A"]
        assert query.downstream_of("missing") == []

    def test_change_footprint(self):
        old = parse("flowchart TD\n    A --> B\n    B --> C\n")
        new = parse("flowchart TD\n    A[Start] --> B\n    B --> C\n")
        footprint = change_footprint(diff(old, new, id_map={}))
        assert footprint["touched"] == ["A"]
        assert footprint["downstream"] == ["B", "C"]
        assert footprint["removed"] == []
        assert footprint["ratio"] == 1.0

    def test_footprint_of_removal(self):
        old = parse("flowchart TD\n    A --> B\n    B --> C\n")
        new = parse("flowchart TD\n    A --> B\n")
        footprint = change_footprint(diff(old, new))
        assert footprint["touched"] == []
        assert footprint["removed"] == ["C"]
        assert footprint["ratio"] == 0.0
