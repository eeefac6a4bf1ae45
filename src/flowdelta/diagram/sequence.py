"""Sequence dialect: parse `sequenceDiagram` text and render it back.

Participants and actors become nodes, messages become ordered edges. Notes,
activations and control blocks (loop, alt, par, ...) are not part of the
structure but are kept as fragments anchored between messages so they
survive a parse/render cycle.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from flowdelta.diagram.fmt import (
    ANNOTATIONS_MARKER,
    HIGHLIGHT_FILLS,
    INDENT,
    WRAP_MARKER,
    mm_message,
    split_statements,
    strip_preamble,
    unescape,
)
from flowdelta.diagram.models import (
    ChangeClass,
    ClassMap,
    DiagramGraph,
    DiagramKind,
    Edge,
    Fragment,
    Group,
    Node,
)
from flowdelta.exceptions import ParseError

PARTICIPANT_RE = re.compile(r"^(participant|actor)\s+(?P<id>[^\s:;]+?)(?:\s+as\s+(?P<alias>.+))?$")
PARTICIPANT_ID = r"[^\s:+\-<>]+(?:-(?![-)>x])[^\s:+\-<>]+)*"
MESSAGE_RE = re.compile(
    rf"^(?P<src>{PARTICIPANT_ID})\s*"
    r"(?P<arrow><<-->>|<<->>|-->>|->>|--x|-x|--\)|-\)|-->|->)"
    r"(?P<act>[+-]?)\s*"
    rf"(?P<dst>{PARTICIPANT_ID})\s*"
    r"(?::(?P<text>.*))?$"
)
NOTE_RE = re.compile(
    r"^note\s+(?:left of|right of|over)\s+(?P<ids>[^:]+?)\s*:(?P<text>.*)$", re.IGNORECASE
)
BLOCK_OPENERS = ("loop", "alt", "opt", "par", "critical", "break", "rect")
BLOCK_CONTINUATIONS = ("else", "and", "option")
UNSUPPORTED = ("create", "destroy")


@dataclass
class _State:
    graph: DiagramGraph
    nodes: dict[str, Node] = field(default_factory=dict)
    groups: list[Group] = field(default_factory=list)
    # ("box" | "block" | "wrap", line)
    stack: list[tuple[str, int]] = field(default_factory=list)
    wrap_pending: bool = False

    @property
    def current_box(self) -> str | None:
        for kind, _ in reversed(self.stack):
            if kind == "box":
                return self.groups[-1].id
        return None


def parse_sequence(text: str) -> DiagramGraph:
    """Parse sequence diagram text into a DiagramGraph.

    Raises:
        ParseError: On the first malformed or unsupported statement.
    """
    lines = text.splitlines()
    preamble, start = strip_preamble(lines)
    graph = DiagramGraph(kind=DiagramKind.SEQUENCE, preamble=preamble)
    state = _State(graph=graph)
    header_seen = False

    for lineno in range(start + 1, len(lines) + 1):
        raw = lines[lineno - 1].strip()
        if raw == ANNOTATIONS_MARKER:
            break
        if raw == WRAP_MARKER:
            state.wrap_pending = True
            continue
        if not raw or raw.startswith("%%"):
            continue
        for stmt in split_statements(raw):
            if not header_seen:
                if stmt != "sequenceDiagram":
                    raise ParseError(lineno, "expected 'sequenceDiagram' header")
                graph.header = stmt
                header_seen = True
                continue
            _parse_statement(stmt, lineno, state)

    if not header_seen:
        raise ParseError(max(len(lines), 1), "empty diagram")
    if state.stack:
        kind, line = state.stack[-1]
        raise ParseError(line, f"'{kind}' block is never closed")

    graph.nodes = _box_order(list(state.nodes.values()), state.groups)
    graph.groups = state.groups
    return graph


def _parse_statement(stmt: str, lineno: int, state: _State) -> None:
    graph = state.graph
    keyword = stmt.split(None, 1)[0]
    lowered = keyword.lower()

    if state.wrap_pending:
        state.wrap_pending = False
        if lowered != "rect":
            raise ParseError(lineno, "highlight marker must be followed by 'rect'")
        state.stack.append(("wrap", lineno))
        return

    if stmt == "end":
        if not state.stack:
            raise ParseError(lineno, "unexpected 'end'")
        kind, _ = state.stack.pop()
        if kind == "block":
            _fragment(state, stmt)
        return

    if lowered in UNSUPPORTED:
        raise ParseError(lineno, f"unsupported statement '{keyword}'")

    if lowered in ("participant", "actor"):
        m = PARTICIPANT_RE.match(stmt)
        if not m:
            raise ParseError(lineno, f"malformed {lowered} declaration")
        node = _touch(state, m.group("id"), lineno)
        node.shape = m.group(1)
        if m.group("alias"):
            node.label = unescape(m.group("alias").strip())
        return

    if lowered == "box":
        if state.current_box is not None:
            raise ParseError(lineno, "boxes cannot be nested")
        title = stmt[3:].strip()
        state.groups.append(Group(id=f"box{len(state.groups) + 1}", title=title))
        state.stack.append(("box", lineno))
        return

    if lowered in BLOCK_OPENERS:
        state.stack.append(("block", lineno))
        _fragment(state, stmt)
        return

    if lowered in BLOCK_CONTINUATIONS:
        if not state.stack or state.stack[-1][0] != "block":
            raise ParseError(lineno, f"'{keyword}' outside a block")
        _fragment(state, stmt)
        return

    if lowered == "note":
        m = NOTE_RE.match(stmt)
        if not m:
            raise ParseError(lineno, "malformed note")
        for pid in m.group("ids").split(","):
            _touch(state, pid.strip(), lineno)
        _fragment(state, stmt)
        return

    if lowered in ("activate", "deactivate"):
        parts = stmt.split()
        if len(parts) != 2:
            raise ParseError(lineno, f"{lowered} needs exactly one participant")
        _touch(state, parts[1], lineno)
        _fragment(state, stmt)
        return

    if lowered in ("autonumber", "title", "title:") or lowered.startswith(("acctitle", "accdescr")):
        graph.options.append(stmt)
        return

    if lowered in ("link", "links"):
        _fragment(state, stmt)
        return

    m = MESSAGE_RE.match(stmt)
    if not m:
        raise ParseError(lineno, f"unrecognized statement '{stmt[:40]}'")
    source = _touch(state, m.group("src"), lineno).id
    target = _touch(state, m.group("dst"), lineno).id
    graph.edges.append(
        Edge(
            source=source,
            target=target,
            label=unescape((m.group("text") or "").strip()),
            arrow=m.group("arrow") + m.group("act"),
            sequence_index=len(graph.edges),
        )
    )


def _touch(state: _State, participant_id: str, lineno: int) -> Node:
    if not participant_id:
        raise ParseError(lineno, "missing participant id")
    node = state.nodes.get(participant_id)
    if node is None:
        node = Node(id=participant_id, shape="participant", group=state.current_box)
        state.nodes[participant_id] = node
    return node


def _fragment(state: _State, stmt: str) -> None:
    state.graph.fragments.append(Fragment(text=stmt, position=len(state.graph.edges)))


def _box_order(nodes: list[Node], groups: list[Group]) -> list[Node]:
    """Keep each box's participants together at the position of its first member."""
    known = {g.id for g in groups}
    ordered: list[Node] = []
    placed: set[str] = set()
    for node in nodes:
        if node.group is None or node.group not in known:
            ordered.append(node)
        elif node.group not in placed:
            placed.add(node.group)
            ordered.extend(n for n in nodes if n.group == node.group)
    return ordered


def render_sequence(graph: DiagramGraph, class_map: ClassMap | None = None) -> str:
    """Render a sequence diagram, annotating non-unchanged elements from `class_map`."""
    cm = class_map or ClassMap()
    lines: list[str] = list(graph.preamble)
    lines.append(graph.header or "sequenceDiagram")
    lines.extend(INDENT + opt for opt in graph.options)

    removed_nodes = [n for n in graph.nodes if cm.node_class(n.id) == ChangeClass.REMOVED]
    kept_nodes = [n for n in graph.nodes if cm.node_class(n.id) != ChangeClass.REMOVED]
    group_titles = {g.id: g.title for g in graph.groups}

    emitted_boxes: set[str] = set()
    for node in _box_order(kept_nodes, graph.groups):
        if node.group is not None and node.group in group_titles:
            if node.group in emitted_boxes:
                continue
            emitted_boxes.add(node.group)
            title = group_titles[node.group]
            lines.append(f"{INDENT}box {title}".rstrip())
            for member in kept_nodes:
                if member.group == node.group:
                    lines.append(INDENT * 2 + _participant_line(member))
            lines.append(f"{INDENT}end")
        else:
            lines.append(INDENT + _participant_line(node))

    kept_edges = [e for i, e in enumerate(graph.edges) if cm.edge_class(i) != ChangeClass.REMOVED]
    kept_classes = [
        cm.edge_class(i)
        for i, _ in enumerate(graph.edges)
        if cm.edge_class(i) != ChangeClass.REMOVED
    ]
    removed_edges = [e for i, e in enumerate(graph.edges) if cm.edge_class(i) == ChangeClass.REMOVED]

    depth = 1
    fragments = sorted(graph.fragments, key=lambda f: f.position)
    frag_index = 0
    for position in range(len(kept_edges) + 1):
        while frag_index < len(fragments) and fragments[frag_index].position <= position:
            depth = _emit_fragment(fragments[frag_index].text, lines, depth)
            frag_index += 1
        if position == len(kept_edges):
            break
        edge, change = kept_edges[position], kept_classes[position]
        pad = INDENT * depth
        if change == ChangeClass.UNCHANGED:
            lines.append(pad + _message_line(edge))
        else:
            lines.append(pad + WRAP_MARKER)
            lines.append(f"{pad}rect {HIGHLIGHT_FILLS[change]}")
            lines.append(pad + INDENT + _message_line(edge))
            lines.append(f"{pad}end")
    for fragment in fragments[frag_index:]:
        depth = _emit_fragment(fragment.text, lines, depth)

    if cm.is_empty():
        return "\n".join(lines) + "\n"

    lines.append(INDENT + ANNOTATIONS_MARKER)
    for node in removed_nodes:
        lines.append(INDENT + _participant_line(node))
    for node in kept_nodes + removed_nodes:
        change = cm.node_class(node.id)
        if change == ChangeClass.UNCHANGED:
            continue
        lines.append(f"{INDENT}rect {HIGHLIGHT_FILLS[change]}")
        lines.append(f"{INDENT * 2}Note over {node.id}: {change.value}")
        lines.append(f"{INDENT}end")
    for edge in removed_edges:
        lines.append(f"{INDENT}rect {HIGHLIGHT_FILLS[ChangeClass.REMOVED]}")
        lines.append(INDENT * 2 + _message_line(edge))
        lines.append(f"{INDENT}end")
    return "\n".join(lines) + "\n"


def _emit_fragment(text: str, lines: list[str], depth: int) -> int:
    keyword = text.split(None, 1)[0].lower()
    if keyword == "end" or keyword in BLOCK_CONTINUATIONS:
        depth = max(1, depth - 1)
    lines.append(INDENT * depth + text)
    if keyword in BLOCK_OPENERS or keyword in BLOCK_CONTINUATIONS:
        depth += 1
    return depth


def _participant_line(node: Node) -> str:
    kind = node.shape if node.shape in ("participant", "actor") else "participant"
    if node.label and node.label != node.id:
        return f"{kind} {node.id} as {mm_message(node.label)}"
    return f"{kind} {node.id}"


def _message_line(edge: Edge) -> str:
    return f"{edge.source}{edge.arrow}{edge.target}: {mm_message(edge.label)}".rstrip()
