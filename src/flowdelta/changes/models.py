"""The changeset: which files a proposed change touches."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from flowdelta.changes.diff_parser import changed_paths, parse_diff
from flowdelta.registry.matcher import normalize_path


class ChangeSet(BaseModel):
    """Ordered set of normalized relative paths, plus an optional identifier."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    paths: tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.paths)

    def is_empty(self) -> bool:
        return not self.paths

    @classmethod
    def from_paths(cls, paths: Iterable[str], changeset_id: str = "") -> ChangeSet:
        """Normalize paths and drop duplicates (first occurrence wins)."""
        seen: dict[str, None] = {}
        for path in paths:
            normalized = normalize_path(path)
            if normalized:
                seen.setdefault(normalized, None)
        return cls(id=changeset_id, paths=tuple(seen))

    @classmethod
    def from_text(cls, text: str, changeset_id: str = "") -> ChangeSet:
        """Read a changeset from text.

        A unified diff is detected by its headers; anything else is one path
        per line, with ``#`` starting a comment.
        """
        if _looks_like_diff(text):
            return cls.from_diff(text, changeset_id)
        paths = []
        for line in text.splitlines():
            line = line.split("#", 1)[0].strip()
            if line:
                paths.append(line)
        return cls.from_paths(paths, changeset_id)

    @classmethod
    def from_diff(cls, diff_text: str, changeset_id: str = "") -> ChangeSet:
        """Build a changeset from a unified diff (renames count both paths)."""
        return cls.from_paths(changed_paths(parse_diff(diff_text)), changeset_id)

    @classmethod
    def from_file(cls, path: str | Path, changeset_id: str = "") -> ChangeSet:
        path = Path(path)
        return cls.from_text(path.read_text(encoding="utf-8"), changeset_id or path.stem)


def _looks_like_diff(text: str) -> bool:
    for line in text.splitlines():
        if line.startswith(("diff --git ", "--- ", "+++ ", "@@ ")):
            return True
    return False
