"""Mermaid diagram model: parsing, rendering and structural diffs."""

from flowdelta.diagram.core import detect_kind, parse, parse_or_empty, render, render_diff
from flowdelta.diagram.differ import DiagramDiff, DiagramDiffer, diff
from flowdelta.diagram.models import (
    ChangeClass,
    ClassMap,
    DiagramGraph,
    DiagramKind,
    Edge,
    Group,
    Node,
)
from flowdelta.diagram.query import DiagramQuery, change_footprint, to_networkx

__all__ = [
    "ChangeClass",
    "ClassMap",
    "DiagramDiff",
    "DiagramDiffer",
    "DiagramGraph",
    "DiagramKind",
    "DiagramQuery",
    "Edge",
    "Group",
    "Node",
    "change_footprint",
    "detect_kind",
    "diff",
    "parse",
    "parse_or_empty",
    "render",
    "render_diff",
    "to_networkx",
]
