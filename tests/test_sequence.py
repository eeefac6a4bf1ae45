"""Tests for the sequence diagram adapter."""

from __future__ import annotations

import pytest

from flowdelta.diagram import ChangeClass, ClassMap, DiagramKind, parse, render
from flowdelta.diagram.fmt import ANNOTATIONS_MARKER, WRAP_MARKER
from flowdelta.exceptions import ParseError

from conftest import UI_SEQUENCE

LOOPED = """\
sequenceDiagram
    A->>B: ping
    loop every second
        B->>A: pong
    end
    Note over A,B: done
"""

BOXED = """\
sequenceDiagram
    box Backend
        participant S as Server
        participant D as DB
    end
    actor U as User
    U->>S: request
    S->>D: query
"""


class TestParseSequence:
    def test_participants_and_messages(self):
        graph = parse(UI_SEQUENCE)
        assert graph.kind == DiagramKind.SEQUENCE
        assert [(n.id, n.label) for n in graph.nodes] == [("R", "Runner"), ("C", "Compiler")]
        assert [(e.source, e.target, e.arrow, e.label) for e in graph.edges] == [
            ("R", "C", "->>", "compile test"),
            ("C", "R", "-->>", "diagnostics"),
        ]
        assert [e.sequence_index for e in graph.edges] == [0, 1]

    def test_implicit_participants(self):
        graph = parse(LOOPED)
        assert graph.node_ids == ["A", "B"]

    def test_fragments_keep_position(self):
        graph = parse(LOOPED)
        assert [(f.text, f.position) for f in graph.fragments] == [
            ("loop every second", 1),
            ("end", 2),
            ("Note over A,B: done", 2),
        ]

    def test_boxes(self):
        graph = parse(BOXED)
        assert [(g.id, g.title) for g in graph.groups] == [("box1", "Backend")]
        assert {n.id: n.group for n in graph.nodes} == {"S": "box1", "D": "box1", "U": None}
        assert graph.node("U").shape == "actor"

    def test_activation_suffix(self):
        graph = parse("sequenceDiagram\n    A->>+B: start\n    B-->>-A: done\n")
        assert [e.arrow for e in graph.edges] == ["->>+", "-->>-"]

    def test_hyphenated_participants(self):
        graph = parse(
            "sequenceDiagram\n"
            "    participant cargo-clippy\n"
            "    participant rustc\n"
            "    cargo-clippy->>rustc: run\n"
            "    rustc--)cargo-clippy: lints\n"
            "    rustc->>+x-ray: scan\n"
        )
        assert graph.node_ids == ["cargo-clippy", "rustc", "x-ray"]
        assert [(e.source, e.arrow, e.target) for e in graph.edges] == [
            ("cargo-clippy", "->>", "rustc"),
            ("rustc", "--)", "cargo-clippy"),
            ("rustc", "->>+", "x-ray"),
        ]
        assert parse(render(graph)) == graph

    def test_escaped_semicolon(self):
        graph = parse("sequenceDiagram\n    A->>B: a#59; b\n")
        assert graph.edges[0].label == "a; b"

    def test_unsupported_statements(self):
        with pytest.raises(ParseError, match="unsupported") as exc_info:
            parse("sequenceDiagram\n    A->>B: hi\n    create participant C\n")
        assert exc_info.value.line == 3

    def test_unclosed_block(self):
        with pytest.raises(ParseError) as exc_info:
            parse("sequenceDiagram\n    loop forever\n    A->>B: hi\n")
        assert exc_info.value.line == 2

    def test_unrecognized_statement(self):
        with pytest.raises(ParseError, match="unrecognized"):
            parse("sequenceDiagram\n    A talks to B\n")

    def test_annotations_are_ignored(self):
        annotated = UI_SEQUENCE + (
            f"    {ANNOTATIONS_MARKER}\n"
            "    rect rgb(248, 215, 218)\n"
            "        Note over R: removed\n"
            "    end\n"
        )
        assert parse(annotated) == parse(UI_SEQUENCE)


class TestRenderSequence:
    def test_render_is_canonical(self):
        assert render(parse(UI_SEQUENCE)) == UI_SEQUENCE

    @pytest.mark.parametrize("text", [UI_SEQUENCE, LOOPED, BOXED])
    def test_round_trip(self, text: str):
        graph = parse(text)
        assert parse(render(graph)) == graph

    def test_nested_blocks_indent(self):
        text = render(parse(LOOPED))
        assert "        B->>A: pong" in text.splitlines()

    def test_changed_message_is_wrapped(self):
        graph = parse(UI_SEQUENCE)
        text = render(graph, ClassMap(edges={1: ChangeClass.ADDED}))
        lines = text.splitlines()
        marker = lines.index(f"    {WRAP_MARKER}")
        assert lines[marker + 1] == "    rect rgb(212, 237, 218)"
        assert lines[marker + 2] == "        C-->>R: diagnostics"
        assert lines[marker + 3] == "    end"
        # The wrapper is transparent to the parser
        assert parse(text) == graph

    def test_removed_message_after_marker(self):
        graph = parse(UI_SEQUENCE)
        text = render(graph, ClassMap(edges={0: ChangeClass.REMOVED}))
        before, after = text.split(ANNOTATIONS_MARKER)
        assert "R->>C: compile test" not in before
        assert "R->>C: compile test" in after
        assert len(parse(text).edges) == 1

    def test_semicolons_are_escaped(self):
        graph = parse("sequenceDiagram\n    A->>B: a#59; b\n")
        assert "A->>B: a#59; b" in render(graph)
