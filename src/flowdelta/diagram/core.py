"""Diagram parse/render entry points - dispatch to the dialect adapters."""

from __future__ import annotations

from pydantic import ValidationError as PydanticValidationError

from flowdelta.diagram.differ import DiagramDiff
from flowdelta.diagram.fmt import strip_preamble
from flowdelta.diagram.models import ClassMap, DiagramGraph, DiagramKind
from flowdelta.exceptions import ParseError


def detect_kind(text: str) -> DiagramKind:
    """Detect the dialect from the diagram header.

    Raises:
        ParseError: If the text is empty or the header names an unsupported dialect.
    """
    lines = text.splitlines()
    _, start = strip_preamble(lines)
    for lineno in range(start + 1, len(lines) + 1):
        stripped = lines[lineno - 1].strip()
        if not stripped or stripped.startswith("%%"):
            continue
        word = stripped.split(None, 1)[0].rstrip(";")
        if word == "sequenceDiagram":
            return DiagramKind.SEQUENCE
        if word.lower() in ("flowchart", "graph"):
            return DiagramKind.FLOW
        raise ParseError(lineno, f"unsupported diagram type '{word}'")
    raise ParseError(max(len(lines), 1), "empty diagram")


def parse(text: str) -> DiagramGraph:
    """Parse Mermaid text into a DiagramGraph.

    - flowchart / graph: uses the flowchart adapter
    - sequenceDiagram: uses the sequence adapter

    Renderer-owned annotations are ignored, so an annotated diagram parses
    back to its plain structure.

    Raises:
        ParseError: With the offending line number and a reason.
    """
    kind = detect_kind(text)
    if kind == DiagramKind.SEQUENCE:
        from flowdelta.diagram.sequence import parse_sequence

        graph = parse_sequence(text)
    else:
        from flowdelta.diagram.flowchart import parse_flowchart

        graph = parse_flowchart(text)

    # Re-run the model invariants on the finished graph
    try:
        return DiagramGraph.model_validate(graph.model_dump())
    except PydanticValidationError as e:
        raise ParseError(0, str(e.errors()[0].get("msg", e))) from e


def parse_or_empty(text: str, kind: DiagramKind) -> DiagramGraph:
    """Parse `text`, treating blank text as an empty diagram of `kind`."""
    if not text.strip():
        return DiagramGraph.empty(kind)
    return parse(text)


def render(graph: DiagramGraph, class_map: ClassMap | None = None) -> str:
    """Render a DiagramGraph to Mermaid text, annotating changes from `class_map`."""
    if graph.kind == DiagramKind.SEQUENCE:
        from flowdelta.diagram.sequence import render_sequence

        return render_sequence(graph, class_map)

    from flowdelta.diagram.flowchart import render_flowchart

    return render_flowchart(graph, class_map)


def render_diff(diff: DiagramDiff) -> str:
    """Render the visual delta of `diff`: the new diagram with change annotations.

    An all-unchanged diff renders without annotations.
    """
    graph, class_map = diff.merged()
    return render(graph, class_map)
