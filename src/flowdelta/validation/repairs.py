"""Automatic repairs for common syntax problems in rendered diagrams.

Each repair takes diagram text and returns it, possibly changed. A repair
that does not apply returns its input unchanged.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from flowdelta.diagram.core import detect_kind
from flowdelta.diagram.fmt import unique_id
from flowdelta.diagram.models import DiagramKind
from flowdelta.exceptions import ParseError

Repair = Callable[[str], str]

# Bracket pairs for plain node shapes whose label may need quoting
_LABEL_PAIRS = (("[", "]"), ("(", ")"), ("{", "}"))
_SPECIAL = set('<>"')
_MESSAGE_RE = re.compile(
    r"^(?P<head>\s*[^\s:]+?\s*(?:<<-->>|<<->>|-->>|->>|--x|-x|--\)|-\)|-->|->)[+-]?\s*[^\s:]+?\s*:)"
    r"(?P<text>.*)$"
)
_DECLARATION_RE = re.compile(
    r"(?<![\w\"])(\w+)(\[\[|\[\(|\(\(\(|\(\(|\(\[|\{\{|\[|\(|\{)\"([^\"]*)\""
)
_SEGMENT_RE = re.compile(r'("[^"]*"|\|[^|]*\|)')


def _kind(text: str) -> DiagramKind | None:
    try:
        return detect_kind(text)
    except ParseError:
        return None


def escape_labels(text: str) -> str:
    """Quote flowchart labels that contain special characters; escape `;` in messages."""
    kind = _kind(text)
    if kind == DiagramKind.SEQUENCE:
        return _map_lines(text, _escape_message)
    if kind == DiagramKind.FLOW:
        return _map_lines(text, _quote_node_labels)
    return text


def _escape_message(line: str) -> str:
    m = _MESSAGE_RE.match(line)
    if not m or ";" not in m.group("text"):
        return line
    return m.group("head") + m.group("text").replace(";", "#59;")


def _quote_node_labels(line: str) -> str:
    for opener, closer in _LABEL_PAIRS:
        pattern = re.compile(
            rf"(?<![\w\"])(\w+){re.escape(opener)}(?![\"{re.escape(opener)}])"
            rf"([^{re.escape(opener + closer)}\n]*){re.escape(closer)}"
        )

        def quote(m: re.Match, opener=opener, closer=closer) -> str:
            label = m.group(2)
            if not _SPECIAL.intersection(label):
                return m.group(0)
            escaped = label.strip().replace('"', "#quot;")
            return f'{m.group(1)}{opener}"{escaped}"{closer}'

        line = pattern.sub(quote, line)
    return line


def dedupe_node_ids(text: str) -> str:
    """Rename later declarations of a flowchart node id that carry a different label."""
    if _kind(text) != DiagramKind.FLOW:
        return text
    used = set(re.findall(r"\w+", text))
    labels: dict[str, str] = {}

    def rename(m: re.Match) -> str:
        node_id, label = m.group(1), m.group(3)
        first = labels.setdefault(node_id, label)
        if first == label:
            return m.group(0)
        new_id = unique_id(f"{node_id}_2", used)
        labels[new_id] = label
        return new_id + m.group(0)[len(node_id) :]

    def fix(line: str) -> str:
        if line.strip().startswith(("%%", "subgraph")):
            return line
        return _DECLARATION_RE.sub(rename, line)

    return _map_lines(text, fix)


def normalize_arrows(text: str) -> str:
    """Turn accidental flowchart arrows (`->`, `.->`, `=>`) into valid ones."""
    if _kind(text) != DiagramKind.FLOW:
        return text

    def fix(segment: str) -> str:
        segment = re.sub(r"(?<![-=.<])->(?!>)", "-->", segment)
        segment = re.sub(r"(?<=\s)\.->", "-.->", segment)
        return re.sub(r"(?<![=<])=>", "==>", segment)

    return _map_lines(text, lambda line: _outside_labels(line, fix))


DEFAULT_REPAIRS: tuple[Repair, ...] = (escape_labels, dedupe_node_ids, normalize_arrows)


def _map_lines(text: str, fn: Callable[[str], str]) -> str:
    """Apply `fn` to each statement line; comments and style lines are left alone."""
    out: list[str] = []
    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith(("%%", "style ", "linkStyle ", "classDef ")):
            out.append(line)
        else:
            out.append(fn(line))
    return "\n".join(out)


def _outside_labels(line: str, fn: Callable[[str], str]) -> str:
    parts = _SEGMENT_RE.split(line)
    return "".join(part if i % 2 else fn(part) for i, part in enumerate(parts))
