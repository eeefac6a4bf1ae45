"""Flowchart dialect: parse `flowchart`/`graph` text and render it back.

The parser keeps every structural statement (nodes, links, subgraphs) and the
presentation statements that refer to them (classDef, class, style,
linkStyle, click). Plain ``%%`` comments are the only thing dropped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from flowdelta.diagram.fmt import (
    ANNOTATIONS_MARKER,
    INDENT,
    LINK_STYLES,
    NODE_STYLES,
    REMOVED_REGION_ID,
    REMOVED_REGION_TITLE,
    mm_edge_label,
    mm_text,
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
    Group,
    Node,
)
from flowdelta.exceptions import ParseError

HEADER_RE = re.compile(r"^(flowchart|graph)(?:\s+(TB|TD|BT|RL|LR))?$", re.IGNORECASE)
ID_RE = re.compile(r"\w+")
CLASS_SUFFIX_RE = re.compile(r":::([\w-]+)")
AMP_RE = re.compile(r"\s*&\s*")
PIPE_LABEL_RE = re.compile(r'\s*\|(?P<label>"[^"]*"|[^|]*)\|')

# Plain links: -->, ---, -.->, ==>, --o, --x, <-->, ~~~ and longer variants
LINK_RE = re.compile(
    r"(?:<|o(?=[-=.])|x(?=[-=.]))?(?:-{2,}|={2,}|-\.+-|~{3,})(?:>|o(?=\s)|x(?=\s))?"
)
# Links carrying inline text: -- text -->, -. text .->, == text ==>
TEXT_LINK_RE = re.compile(
    r"(?P<open><?(?:--|==|-\.))\s+(?P<text>[^|]+?)\s+"
    r"(?P<close>-{2,}[>ox]|={2,}[>ox]|\.-+>|-{3,}|={3,}|\.-+)(?=\s|\w|$)"
)

# (open, closers, shape); longer openers first
SHAPES: list[tuple[str, tuple[str, ...], str]] = [
    ("(((", (")))",), "double_circle"),
    ("([", ("])",), "stadium"),
    ("[[", ("]]",), "subroutine"),
    ("[(", (")]",), "cylinder"),
    ("((", ("))",), "circle"),
    ("{{", ("}}",), "hexagon"),
    ("[/", ("/]", "\\]"), "parallelogram"),
    ("[\\", ("\\]", "/]"), "parallelogram_alt"),
    ("[", ("]",), "rect"),
    ("(", (")",), "round"),
    ("{", ("}",), "rhombus"),
    (">", ("]",), "asymmetric"),
]
# Sloped shapes whose closer differs from their opener
_SLOPED = {("[/", "\\]"): "trapezoid", ("[\\", "/]"): "trapezoid_alt"}

SHAPE_DELIMITERS: dict[str, tuple[str, str]] = {
    "double_circle": ("(((", ")))"),
    "stadium": ("([", "])"),
    "subroutine": ("[[", "]]"),
    "cylinder": ("[(", ")]"),
    "circle": ("((", "))"),
    "hexagon": ("{{", "}}"),
    "parallelogram": ("[/", "/]"),
    "parallelogram_alt": ("[\\", "\\]"),
    "trapezoid": ("[/", "\\]"),
    "trapezoid_alt": ("[\\", "/]"),
    "rect": ("[", "]"),
    "round": ("(", ")"),
    "rhombus": ("{", "}"),
    "asymmetric": (">", "]"),
}


@dataclass
class _State:
    graph: DiagramGraph
    nodes: dict[str, Node] = field(default_factory=dict)
    groups: dict[str, Group] = field(default_factory=dict)
    stack: list[tuple[str, int]] = field(default_factory=list)  # (group id, line)
    link_styles: list[tuple[list[str], str, int]] = field(default_factory=list)

    @property
    def current_group(self) -> str | None:
        return self.stack[-1][0] if self.stack else None


def parse_flowchart(text: str) -> DiagramGraph:
    """Parse flowchart text into a DiagramGraph.

    Raises:
        ParseError: On the first malformed or unsupported statement.
    """
    lines = text.splitlines()
    preamble, start = strip_preamble(lines)
    graph = DiagramGraph(kind=DiagramKind.FLOW, preamble=preamble)
    state = _State(graph=graph)
    header_seen = False

    for lineno in range(start + 1, len(lines) + 1):
        raw = lines[lineno - 1].strip()
        if raw == ANNOTATIONS_MARKER:
            break
        if not raw or raw.startswith("%%"):
            continue
        for stmt in split_statements(raw):
            if not header_seen:
                m = HEADER_RE.match(stmt)
                if not m:
                    raise ParseError(lineno, "expected 'flowchart' or 'graph' header")
                graph.header = m.group(1)
                graph.direction = (m.group(2) or "").upper()
                header_seen = True
                continue
            _parse_statement(stmt, lineno, state)

    if not header_seen:
        raise ParseError(max(len(lines), 1), "empty diagram")
    if state.stack:
        group_id, line = state.stack[-1]
        raise ParseError(line, f"subgraph '{group_id}' is never closed")

    for indices, css, line in state.link_styles:
        for idx in indices:
            i = int(idx)
            if i >= len(graph.edges):
                raise ParseError(line, f"linkStyle index {i} is out of range")
            graph.edges[i].style = css

    graph.nodes, graph.groups = canonical_order(
        list(state.nodes.values()), list(state.groups.values())
    )
    return graph


def _parse_statement(stmt: str, lineno: int, state: _State) -> None:
    graph = state.graph
    keyword, _, rest = stmt.partition(" ")
    rest = rest.strip()

    if stmt == "end":
        if not state.stack:
            raise ParseError(lineno, "unexpected 'end' outside a subgraph")
        state.stack.pop()
    elif keyword == "subgraph":
        _open_subgraph(rest, lineno, state)
    elif keyword == "direction":
        direction = rest.upper()
        if direction not in ("TB", "TD", "BT", "RL", "LR"):
            raise ParseError(lineno, f"unknown direction '{rest}'")
        if state.current_group:
            state.groups[state.current_group].direction = direction
        else:
            graph.direction = direction
    elif keyword == "classDef":
        names, _, css = rest.partition(" ")
        if not names or not css.strip():
            raise ParseError(lineno, "classDef needs a name and a style")
        for name in names.split(","):
            graph.class_defs[name.strip()] = css.strip()
    elif keyword == "class":
        ids, _, cls = rest.rpartition(" ")
        if not ids or not cls:
            raise ParseError(lineno, "class needs node ids and a class name")
        for node_id in ids.split(","):
            node = _touch(state, node_id.strip(), lineno)
            if node is not None and cls not in node.classes:
                node.classes.append(cls)
    elif keyword == "style":
        node_id, _, css = rest.partition(" ")
        if not node_id or not css.strip():
            raise ParseError(lineno, "style needs a node id and a style")
        if node_id in state.groups:
            graph.interactions.append(stmt)
        else:
            node = _touch(state, node_id, lineno)
            node.style = css.strip()
    elif keyword == "linkStyle":
        indices, _, css = rest.partition(" ")
        if not indices or not css.strip():
            raise ParseError(lineno, "linkStyle needs indices and a style")
        if indices == "default":
            graph.interactions.append(stmt)
        elif not re.fullmatch(r"\d+(,\d+)*", indices):
            raise ParseError(lineno, f"invalid linkStyle indices '{indices}'")
        else:
            state.link_styles.append((indices.split(","), css.strip(), lineno))
    elif keyword in ("click", "href"):
        graph.interactions.append(stmt)
    elif keyword.startswith("accTitle") or keyword.startswith("accDescr"):
        graph.options.append(stmt)
    else:
        _parse_chain(stmt, lineno, state)


def _open_subgraph(rest: str, lineno: int, state: _State) -> None:
    if not rest:
        raise ParseError(lineno, "subgraph needs an id or title")
    m = re.fullmatch(r'(\w+)\s*\[\s*("[^"]*"|[^\]]*?)\s*\]', rest)
    if m:
        group_id, title = m.group(1), m.group(2).strip('"')
    elif rest.startswith('"') and rest.endswith('"') and len(rest) > 1:
        group_id, title = rest.strip('"'), ""
    else:
        group_id, title = rest, ""
    if group_id in state.groups or group_id in state.nodes:
        raise ParseError(lineno, f"duplicate subgraph id '{group_id}'")
    state.groups[group_id] = Group(
        id=group_id, title=unescape(title), parent=state.current_group
    )
    state.stack.append((group_id, lineno))


def _parse_chain(stmt: str, lineno: int, state: _State) -> None:
    """Parse `A[x] --> B & C -->|y| D` style node and link chains."""
    refs, pos = _parse_ref_group(stmt, 0, lineno, state)
    while True:
        while pos < len(stmt) and stmt[pos].isspace():
            pos += 1
        if pos >= len(stmt):
            return
        arrow, label, pos = _parse_link(stmt, pos, lineno)
        while pos < len(stmt) and stmt[pos].isspace():
            pos += 1
        targets, pos = _parse_ref_group(stmt, pos, lineno, state)
        for source in refs:
            for target in targets:
                state.graph.edges.append(
                    Edge(source=source, target=target, label=label, arrow=arrow)
                )
        refs = targets


def _parse_ref_group(
    stmt: str, pos: int, lineno: int, state: _State
) -> tuple[list[str], int]:
    refs: list[str] = []
    while True:
        ref, pos = _parse_ref(stmt, pos, lineno, state)
        refs.append(ref)
        m = AMP_RE.match(stmt, pos)
        if not m:
            return refs, pos
        pos = m.end()


def _parse_ref(stmt: str, pos: int, lineno: int, state: _State) -> tuple[str, int]:
    m = ID_RE.match(stmt, pos)
    if not m:
        snippet = stmt[pos : pos + 20]
        raise ParseError(lineno, f"expected a node id at '{snippet}'")
    node_id = m.group(0)
    pos = m.end()
    if node_id == "end":
        raise ParseError(lineno, "'end' cannot be used as a node id")

    label: str | None = None
    shape: str | None = None
    if stmt.startswith("@{", pos):
        raise ParseError(lineno, f"unsupported shape syntax for node '{node_id}'")
    for opener, closers, shape_name in SHAPES:
        if not stmt.startswith(opener, pos):
            continue
        parsed = _read_label(stmt, pos + len(opener), closers)
        if parsed is None:
            continue
        label, closer, pos = parsed
        shape = _SLOPED.get((opener, closer), shape_name)
        break
    else:
        if pos < len(stmt) and stmt[pos] in "[({":
            raise ParseError(lineno, f"unterminated label for node '{node_id}'")

    classes: list[str] = []
    while True:
        cm = CLASS_SUFFIX_RE.match(stmt, pos)
        if not cm:
            break
        classes.append(cm.group(1))
        pos = cm.end()

    if shape is None and not classes and node_id in state.groups:
        return node_id, pos  # link to a subgraph

    node = _touch(state, node_id, lineno)
    if shape is not None:
        node.shape = shape
        node.label = label or node_id
    for cls in classes:
        if cls not in node.classes:
            node.classes.append(cls)
    return node_id, pos


def _read_label(
    stmt: str, pos: int, closers: tuple[str, ...]
) -> tuple[str, str, int] | None:
    """Read a node label starting at `pos`; returns (label, closer, end pos)."""
    if pos < len(stmt) and stmt[pos] == '"':
        end_quote = stmt.find('"', pos + 1)
        if end_quote == -1:
            return None
        label = stmt[pos + 1 : end_quote]
        rest = end_quote + 1
        for closer in closers:
            if stmt.startswith(closer, rest):
                return unescape(label), closer, rest + len(closer)
        return None

    best: tuple[int, str] | None = None
    for closer in closers:
        idx = stmt.find(closer, pos)
        if idx != -1 and (best is None or idx < best[0]):
            best = (idx, closer)
    if best is None:
        return None
    idx, closer = best
    return unescape(stmt[pos:idx].strip()), closer, idx + len(closer)


def _parse_link(stmt: str, pos: int, lineno: int) -> tuple[str, str, int]:
    m = LINK_RE.match(stmt, pos)
    if m and (len(m.group(0)) >= 3 or m.group(0)[-1] in ">ox"):
        arrow = m.group(0)
        pos = m.end()
        label = ""
        pm = PIPE_LABEL_RE.match(stmt, pos)
        if pm:
            label = unescape(pm.group("label").strip().strip('"'))
            pos = pm.end()
        return arrow, label, pos

    tm = TEXT_LINK_RE.match(stmt, pos)
    if tm:
        return _canonical_arrow(tm.group("open"), tm.group("close")), unescape(
            tm.group("text").strip().strip('"')
        ), tm.end()

    snippet = stmt[pos : pos + 20]
    raise ParseError(lineno, f"expected a link at '{snippet}'")


def _canonical_arrow(opener: str, closer: str) -> str:
    head = "<" if opener.startswith("<") else ""
    body = opener.lstrip("<")
    tail = closer[-1] if closer[-1] in ">ox" else ""
    if body == "-.":
        return f"{head}-.-{tail}"
    if body == "==":
        return f"{head}=={tail}" if tail else f"{head}==="
    return f"{head}--{tail}" if tail else f"{head}---"


def _touch(state: _State, node_id: str, lineno: int) -> Node:
    if not ID_RE.fullmatch(node_id):
        raise ParseError(lineno, f"invalid node id '{node_id}'")
    if node_id in state.groups:
        raise ParseError(lineno, f"'{node_id}' is already a subgraph id")
    node = state.nodes.get(node_id)
    if node is None:
        node = Node(id=node_id, group=state.current_group)
        state.nodes[node_id] = node
    elif node.group is None and state.current_group is not None:
        node.group = state.current_group
    return node


def canonical_order(nodes: list[Node], groups: list[Group]) -> tuple[list[Node], list[Group]]:
    """Order nodes so each subgraph's members are contiguous.

    A subgraph is placed where its first member (or first nested subgraph)
    appears. The result is exactly the order `render_flowchart` emits, so a
    parse of rendered text reproduces it.
    """
    by_id = {g.id: g for g in groups}
    out_nodes: list[Node] = []
    out_groups: list[Group] = []

    def child_of(container: str | None, group_id: str | None) -> str | None:
        # The ancestor of `group_id` whose parent is `container`
        current = group_id
        while current is not None and current in by_id:
            if by_id[current].parent == container:
                return current
            current = by_id[current].parent
        return None

    def walk(container: str | None) -> None:
        emitted: set[str] = set()
        for node in nodes:
            if node.group == container or (container is None and node.group not in by_id):
                out_nodes.append(node)
                continue
            child = child_of(container, node.group)
            if child is not None and child not in emitted:
                emitted.add(child)
                out_groups.append(by_id[child])
                walk(child)
        for group in groups:
            if group.parent == container and group.id not in emitted:
                emitted.add(group.id)
                out_groups.append(group)
                walk(group.id)

    walk(None)
    return out_nodes, out_groups


def render_flowchart(graph: DiagramGraph, class_map: ClassMap | None = None) -> str:
    """Render a flowchart, annotating non-unchanged elements from `class_map`."""
    cm = class_map or ClassMap()
    lines: list[str] = list(graph.preamble)
    lines.append(" ".join(p for p in (graph.header or "flowchart", graph.direction) if p))
    lines.extend(INDENT + opt for opt in graph.options)
    for name, css in graph.class_defs.items():
        lines.append(f"{INDENT}classDef {name} {css}")

    removed_nodes = [n for n in graph.nodes if cm.node_class(n.id) == ChangeClass.REMOVED]
    kept_nodes = [n for n in graph.nodes if cm.node_class(n.id) != ChangeClass.REMOVED]
    groups = [g for g in graph.groups if g.id != REMOVED_REGION_ID]

    ordered, ordered_groups = canonical_order(kept_nodes, groups)
    _emit_container(None, ordered, ordered_groups, lines, 1)

    kept_edges = [i for i, _ in enumerate(graph.edges) if cm.edge_class(i) != ChangeClass.REMOVED]
    removed_edges = [i for i, _ in enumerate(graph.edges) if cm.edge_class(i) == ChangeClass.REMOVED]
    render_index = {orig: pos for pos, orig in enumerate(kept_edges + removed_edges)}

    for i in kept_edges:
        lines.append(INDENT + _edge_line(graph.edges[i]))

    for node in ordered:
        for cls in node.classes:
            lines.append(f"{INDENT}class {node.id} {cls}")
    for node in ordered:
        if node.style:
            lines.append(f"{INDENT}style {node.id} {node.style}")
    for i in kept_edges:
        if graph.edges[i].style:
            lines.append(f"{INDENT}linkStyle {render_index[i]} {graph.edges[i].style}")
    lines.extend(INDENT + line for line in graph.interactions)

    if cm.is_empty():
        return "\n".join(lines) + "\n"

    lines.append(INDENT + ANNOTATIONS_MARKER)
    if removed_nodes:
        lines.append(f'{INDENT}subgraph {REMOVED_REGION_ID} ["{REMOVED_REGION_TITLE}"]')
        for node in removed_nodes:
            lines.append(INDENT * 2 + _node_decl(node))
        lines.append(f"{INDENT}end")
    for i in removed_edges:
        lines.append(INDENT + _edge_line(graph.edges[i]))
    for node in ordered + removed_nodes:
        change = cm.node_class(node.id)
        if change != ChangeClass.UNCHANGED:
            lines.append(f"{INDENT}style {node.id} {NODE_STYLES[change]}")
    for i in kept_edges + removed_edges:
        change = cm.edge_class(i)
        if change != ChangeClass.UNCHANGED:
            lines.append(f"{INDENT}linkStyle {render_index[i]} {LINK_STYLES[change]}")
    return "\n".join(lines) + "\n"


def _emit_container(
    container: str | None,
    nodes: list[Node],
    groups: list[Group],
    lines: list[str],
    depth: int,
) -> None:
    pad = INDENT * depth
    emitted: set[str] = set()
    by_id = {g.id: g for g in groups}

    def top_child(group_id: str | None) -> str | None:
        current = group_id
        while current is not None and current in by_id:
            if by_id[current].parent == container:
                return current
            current = by_id[current].parent
        return None

    def open_group(group: Group) -> None:
        if group.title and group.title != group.id:
            lines.append(f'{pad}subgraph {group.id} ["{mm_text(group.title)}"]')
        else:
            lines.append(f"{pad}subgraph {group.id}")
        if group.direction:
            lines.append(f"{pad}{INDENT}direction {group.direction}")
        _emit_container(group.id, nodes, groups, lines, depth + 1)
        lines.append(f"{pad}end")

    for node in nodes:
        if node.group == container or (container is None and node.group not in by_id):
            lines.append(pad + _node_decl(node))
            continue
        child = top_child(node.group)
        if child is not None and child not in emitted:
            emitted.add(child)
            open_group(by_id[child])
    for group in groups:
        if group.parent == container and group.id not in emitted:
            emitted.add(group.id)
            open_group(group)


def _node_decl(node: Node) -> str:
    if node.shape == "rect" and node.label == node.id:
        return node.id
    opener, closer = SHAPE_DELIMITERS.get(node.shape, ("[", "]"))
    return f'{node.id}{opener}"{mm_text(node.label)}"{closer}'


def _edge_line(edge: Edge) -> str:
    if edge.label:
        return f"{edge.source} {edge.arrow}|{mm_edge_label(edge.label)}| {edge.target}"
    return f"{edge.source} {edge.arrow} {edge.target}"
