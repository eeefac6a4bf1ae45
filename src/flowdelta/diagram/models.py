"""Data models for parsed diagrams and their diffs."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, model_validator


class DiagramKind(str, Enum):
    """Supported diagram dialects."""

    FLOW = "flow"
    SEQUENCE = "sequence"


class ChangeClass(str, Enum):
    """Classification of a diagram element between two versions."""

    UNCHANGED = "unchanged"
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


class Node(BaseModel):
    """A flowchart node or a sequence participant."""

    id: str
    label: str = ""
    shape: str = "rect"  # flow: rect, round, ...; sequence: participant, actor
    style: str = ""  # explicit `style` directive body
    classes: list[str] = Field(default_factory=list)
    group: str | None = None  # subgraph / box id

    def model_post_init(self, __context: object) -> None:
        if not self.label:
            self.label = self.id


class Edge(BaseModel):
    """A flowchart link or a sequence message."""

    source: str
    target: str
    label: str = ""
    arrow: str = "-->"
    style: str = ""  # linkStyle body (flow only)
    sequence_index: int | None = None


class Group(BaseModel):
    """A flowchart subgraph or a sequence box."""

    id: str
    title: str = ""
    parent: str | None = None
    direction: str = ""


class Fragment(BaseModel):
    """A sequence statement kept verbatim at its position among messages.

    `position` is the number of messages that precede it, so fragments with
    position 3 are emitted right before the fourth message.
    """

    text: str
    position: int


class DiagramGraph(BaseModel):
    """Structural representation of one diagram."""

    kind: DiagramKind = DiagramKind.FLOW
    header: str = ""  # "flowchart", "graph" or "sequenceDiagram"
    direction: str = ""
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    groups: list[Group] = Field(default_factory=list)
    # Presentation data preserved verbatim across a parse/render cycle
    preamble: list[str] = Field(default_factory=list)  # front matter, %%{init}%%
    class_defs: dict[str, str] = Field(default_factory=dict)
    interactions: list[str] = Field(default_factory=list)  # click lines
    fragments: list[Fragment] = Field(default_factory=list)
    options: list[str] = Field(default_factory=list)  # title, autonumber, ...

    @model_validator(mode="after")
    def _check_references(self) -> DiagramGraph:
        ids: set[str] = set()
        for node in self.nodes:
            if node.id in ids:
                raise ValueError(f"Duplicate node id: {node.id}")
            ids.add(node.id)
        group_ids = {g.id for g in self.groups}
        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in ids and end not in group_ids:
                    raise ValueError(f"Edge references unknown node: {end}")
        if self.kind == DiagramKind.SEQUENCE:
            last = -1
            for edge in self.edges:
                if edge.sequence_index is None or edge.sequence_index <= last:
                    raise ValueError("Sequence messages must be strictly ordered")
                last = edge.sequence_index
        elif any(e.sequence_index is not None for e in self.edges):
            raise ValueError("Flow edges cannot carry a sequence index")
        return self

    @classmethod
    def empty(cls, kind: DiagramKind = DiagramKind.FLOW) -> DiagramGraph:
        header = "sequenceDiagram" if kind == DiagramKind.SEQUENCE else "flowchart"
        return cls(kind=kind, header=header)

    def node(self, node_id: str) -> Node | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    @property
    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def is_empty(self) -> bool:
        return not self.nodes and not self.edges


class ClassMap(BaseModel):
    """Change classes to annotate while rendering.

    Nodes are keyed by node id, edges by their index in `DiagramGraph.edges`.
    Elements not listed render as unchanged; removed elements are moved to the
    removed region.
    """

    nodes: dict[str, ChangeClass] = Field(default_factory=dict)
    edges: dict[int, ChangeClass] = Field(default_factory=dict)

    def node_class(self, node_id: str) -> ChangeClass:
        return self.nodes.get(node_id, ChangeClass.UNCHANGED)

    def edge_class(self, index: int) -> ChangeClass:
        return self.edges.get(index, ChangeClass.UNCHANGED)

    def is_empty(self) -> bool:
        return not any(c != ChangeClass.UNCHANGED for c in self.nodes.values()) and not any(
            c != ChangeClass.UNCHANGED for c in self.edges.values()
        )


class NodeDelta(BaseModel):
    """Classification of one node across two diagram versions."""

    key: str
    old_id: str | None = None
    new_id: str | None = None
    change: ChangeClass


class EdgeDelta(BaseModel):
    """Classification of one edge; indices point into old/new edge lists."""

    key: str
    old_index: int | None = None
    new_index: int | None = None
    change: ChangeClass
