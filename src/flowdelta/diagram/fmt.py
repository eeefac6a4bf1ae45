"""Mermaid text helpers shared by the flowchart and sequence adapters."""

from __future__ import annotations

import re

from flowdelta.diagram.models import ChangeClass

# Everything after this comment is renderer-owned and ignored by the parsers
ANNOTATIONS_MARKER = "%% flowdelta:annotations"
# Marks a highlight block the renderer wrapped around a single message
WRAP_MARKER = "%% flowdelta:wrap"
REMOVED_REGION_ID = "flowdelta_removed"
REMOVED_REGION_TITLE = "Removed"

NODE_STYLES: dict[ChangeClass, str] = {
    ChangeClass.ADDED: "fill:#d4edda,stroke:#28a745,color:#155724",
    ChangeClass.CHANGED: "fill:#fff3cd,stroke:#d39e00,color:#856404",
    ChangeClass.REMOVED: "fill:#f8d7da,stroke:#dc3545,color:#721c24,stroke-dasharray:5 5",
}

LINK_STYLES: dict[ChangeClass, str] = {
    ChangeClass.ADDED: "stroke:#28a745,stroke-width:2px",
    ChangeClass.CHANGED: "stroke:#d39e00,stroke-width:2px",
    ChangeClass.REMOVED: "stroke:#dc3545,stroke-width:2px,stroke-dasharray:5 5",
}

HIGHLIGHT_FILLS: dict[ChangeClass, str] = {
    ChangeClass.ADDED: "rgb(212, 237, 218)",
    ChangeClass.CHANGED: "rgb(255, 243, 205)",
    ChangeClass.REMOVED: "rgb(248, 215, 218)",
}

INDENT = "    "

# An entity code in progress (`#59`, `#quot`); its `;` is not a separator
ENTITY_TAIL_RE = re.compile(r"#\w+$")


def mm_text(text: str) -> str:
    """Escape text for a quoted Mermaid label."""
    normalized = re.sub(r"\s+", " ", str(text)).strip()
    return normalized.replace('"', "#quot;").replace("|", "#124;")


def mm_edge_label(text: str) -> str:
    """Format the text inside `-->|...|`; quoted unless it starts with a word character."""
    escaped = mm_text(text).replace(";", "#59;")
    if escaped and not re.match(r"\w", escaped[0]):
        return f'"{escaped}"'
    return escaped


def mm_message(text: str) -> str:
    """Escape sequence message text; `;` would end the statement."""
    return re.sub(r"\s+", " ", str(text)).strip().replace(";", "#59;")


def unescape(text: str) -> str:
    """Undo the entity escapes the renderer applies."""
    return text.replace("#quot;", '"').replace("#59;", ";").replace("#124;", "|")


def unique_id(base: str, used: set[str]) -> str:
    """Return `base`, or `base_2`, `base_3`... whichever is not in `used`."""
    candidate = base
    n = 2
    while candidate in used:
        candidate = f"{base}_{n}"
        n += 1
    used.add(candidate)
    return candidate


def mermaid_block(code: str) -> str:
    """Wrap Mermaid source in a Markdown code fence."""
    return "```mermaid\n" + code.rstrip() + "\n```\n"


def split_statements(line: str) -> list[str]:
    """Split a line on `;` separators that are outside quotes and brackets."""
    parts: list[str] = []
    depth = 0
    in_quote = False
    current = ""
    for ch in line:
        if ch == '"':
            in_quote = not in_quote
        elif not in_quote:
            if ch in "[({":
                depth += 1
            elif ch in "])}" and depth > 0:
                depth -= 1
            elif ch == ";" and depth == 0 and not ENTITY_TAIL_RE.search(current):
                parts.append(current)
                current = ""
                continue
        current += ch
    parts.append(current)
    return [p.strip() for p in parts if p.strip()]


def strip_preamble(lines: list[str]) -> tuple[list[str], int]:
    """Split off front matter and leading %%{init}%% directives.

    Returns (preamble lines, index of the first line after the preamble).
    """
    preamble: list[str] = []
    i = 0
    # Skip leading blank lines
    while i < len(lines) and not lines[i].strip():
        i += 1
    if i < len(lines) and lines[i].strip() == "---":
        end = i + 1
        while end < len(lines) and lines[end].strip() != "---":
            end += 1
        if end < len(lines):
            preamble.extend(line.rstrip() for line in lines[i : end + 1])
            i = end + 1
    while i < len(lines):
        stripped = lines[i].strip()
        if stripped.startswith("%%{") and stripped.endswith("}%%"):
            preamble.append(stripped)
        elif stripped and not stripped.startswith("%%"):
            break
        i += 1
    return preamble, i
