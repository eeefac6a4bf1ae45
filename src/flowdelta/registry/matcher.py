"""Match changeset paths against workflow file patterns.

Three pattern forms are supported:

- ``clippy_lints/src/``: directory prefix, matches anything nested below it.
- ``clippy_lints/src/lib.rs`` or ``clippy_lints/src``: plain path, matches the
  path itself and anything nested below it (segment-aware, so ``src`` never
  matches ``src2/x.rs``).
- ``tests/ui/*.rs``, ``**/Cargo.toml``: globs. ``*`` and ``?`` stay within one
  segment, ``**`` spans any number of segments.

Anything else (character classes, braces, negation, absolute paths, ``..``)
is rejected with a PatternError when the pattern is compiled, which happens
while the registry loads.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from flowdelta.exceptions import PatternError
from flowdelta.registry.models import MatchEvidence, Workflow

_UNSUPPORTED_CHARS = set("[]{}!\\")


def normalize_path(path: str) -> str:
    """Normalize a relative path: forward slashes, no leading ./, no doubled /."""
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    p = re.sub(r"/{2,}", "/", p)
    return p


@dataclass(frozen=True)
class CompiledPattern:
    """A validated pattern ready for matching."""

    source: str
    normalized: str
    kind: str  # 'prefix', 'directory', 'glob'
    regex: re.Pattern[str] | None = None

    def matches(self, path: str) -> bool:
        if self.kind == "glob":
            return self.regex is not None and self.regex.fullmatch(path) is not None
        if self.kind == "directory":
            return path.startswith(self.normalized)
        # Plain path: exact file, or anything beneath it as a directory
        base = self.normalized
        return path == base or path.startswith(base + "/")


def compile_pattern(pattern: str, workflow_id: str = "") -> CompiledPattern:
    """Validate and compile a single pattern.

    Raises:
        PatternError: If the pattern uses syntax the matcher does not support.
    """
    if not isinstance(pattern, str):
        raise PatternError(repr(pattern), "pattern must be a string", workflow_id)

    raw = pattern.strip()
    if not raw:
        raise PatternError(pattern, "empty pattern", workflow_id)
    if raw.startswith("/"):
        raise PatternError(pattern, "absolute paths are not allowed", workflow_id)

    bad = sorted(_UNSUPPORTED_CHARS.intersection(raw))
    if bad:
        raise PatternError(
            pattern, f"unsupported glob syntax {''.join(bad)!r}", workflow_id
        )

    norm = normalize_path(raw)
    if not norm or norm == "/":
        raise PatternError(pattern, "pattern matches nothing", workflow_id)

    segments = norm.rstrip("/").split("/")
    for seg in segments:
        if seg == "..":
            raise PatternError(pattern, "'..' segments are not allowed", workflow_id)
        if seg == ".":
            raise PatternError(pattern, "'.' segments are not allowed", workflow_id)
        if "**" in seg and seg != "**":
            raise PatternError(
                pattern, "'**' must be a whole path segment", workflow_id
            )

    if "*" in norm or "?" in norm:
        return CompiledPattern(
            source=pattern,
            normalized=norm,
            kind="glob",
            regex=re.compile(_glob_to_regex(segments, norm.endswith("/"))),
        )
    if norm.endswith("/"):
        return CompiledPattern(source=pattern, normalized=norm, kind="directory")
    return CompiledPattern(source=pattern, normalized=norm, kind="prefix")


def _glob_to_regex(segments: list[str], directory: bool) -> str:
    parts: list[str] = []
    last = len(segments) - 1
    for i, seg in enumerate(segments):
        if seg == "**":
            # Zero or more whole segments; a trailing ** swallows the rest
            parts.append(".*" if i == last else "(?:[^/]+/)*")
            continue
        piece = ""
        for ch in seg:
            if ch == "*":
                piece += "[^/]*"
            elif ch == "?":
                piece += "[^/]"
            else:
                piece += re.escape(ch)
        parts.append(piece if i == last else piece + "/")
    regex = "".join(parts)
    if directory:
        regex += "/.+"
    return regex


class PathMatcher:
    """Matches changesets against the compiled patterns of each workflow."""

    def __init__(self, workflows: Sequence[Workflow]) -> None:
        self.workflows = list(workflows)
        self._compiled: dict[str, list[CompiledPattern]] = {}
        for wf in self.workflows:
            self._compiled[wf.id] = [
                compile_pattern(p, wf.id) for p in wf.relevant_file_patterns
            ]

    def match(self, paths: Iterable[str]) -> list[MatchEvidence]:
        """Return evidence for every workflow touched by `paths`, in registry order."""
        normalized = sorted({normalize_path(p) for p in paths if p and p.strip()})
        if not normalized:
            return []

        results: list[MatchEvidence] = []
        for wf in self.workflows:
            evidence = self._match_workflow(wf, normalized)
            if evidence is not None:
                results.append(evidence)
        return results

    def _match_workflow(
        self, workflow: Workflow, paths: list[str]
    ) -> MatchEvidence | None:
        hits: dict[str, tuple[str, ...]] = {}
        matched: set[str] = set()
        for compiled in self._compiled[workflow.id]:
            files = tuple(p for p in paths if compiled.matches(p))
            if files:
                hits[compiled.source] = files
                matched.update(files)

        if not hits:
            return None
        return MatchEvidence(
            workflow_id=workflow.id,
            matched_files=tuple(sorted(matched)),
            matched_pattern=next(iter(hits)),
            pattern_hits=hits,
        )


def match(changeset: Iterable[str], workflows: Sequence[Workflow]) -> list[MatchEvidence]:
    """Convenience wrapper: compile the workflows' patterns and match once."""
    return PathMatcher(workflows).match(changeset)
