"""Unified diff parser - extract the touched file paths of a change.

Accepts the output of `git diff` (or any unified diff with `diff --git`
headers, or bare `---`/`+++` headers). Only paths and per-file statistics
are kept; hunk contents are not needed to decide which workflows a change
affects.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

HUNK_RE = re.compile(r"@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
NULL_PATH = "/dev/null"


@dataclass
class DiffHunk:
    """A single hunk from a unified diff."""
    old_start: int
    old_count: int
    new_start: int
    new_count: int


@dataclass
class FileDiff:
    """Changes to a single file."""
    path: str
    status: str  # 'added', 'modified', 'deleted', 'renamed'
    old_path: str | None = None  # For renames
    hunks: list[DiffHunk] = field(default_factory=list)
    added_lines: int = 0
    deleted_lines: int = 0

    @property
    def touched_paths(self) -> list[str]:
        """Paths this file change touches: both sides of a rename, the old path of a deletion."""
        paths = [self.path]
        if self.old_path and self.old_path != self.path:
            paths.insert(0, self.old_path)
        return paths


def parse_diff(diff_text: str) -> list[FileDiff]:
    """Parse unified diff text into structured FileDiff objects."""
    files: list[FileDiff] = []
    current_file: FileDiff | None = None
    old_left = new_left = 0  # lines still expected in the current hunk

    for line in diff_text.splitlines():
        # New file header
        if line.startswith("diff --git"):
            if current_file:
                files.append(current_file)
            parts = line.split(" b/")
            path = parts[-1] if len(parts) > 1 else ""
            current_file = FileDiff(path=path, status="modified")
            old_left = new_left = 0
            continue

        if line.startswith("--- ") and not (old_left or new_left):
            # Bare unified diff without a git header
            old = _strip_prefix(line[4:])
            if current_file is None or current_file.hunks:
                if current_file:
                    files.append(current_file)
                current_file = FileDiff(path=old, status="modified")
            if old == NULL_PATH:
                current_file.status = "added"
            continue

        if current_file is None:
            continue

        if line.startswith("new file"):
            current_file.status = "added"
        elif line.startswith("deleted file"):
            current_file.status = "deleted"
        elif line.startswith("rename from "):
            current_file.old_path = line[len("rename from "):]
            current_file.status = "renamed"
        elif line.startswith("rename to "):
            current_file.path = line[len("rename to "):]
        elif line.startswith("+++ ") and not (old_left or new_left):
            new = _strip_prefix(line[4:])
            if new == NULL_PATH:
                current_file.status = "deleted"
            else:
                current_file.path = new
        elif line.startswith("@@"):
            match = HUNK_RE.match(line)
            if match:
                hunk = DiffHunk(
                    old_start=int(match.group(1)),
                    old_count=int(match.group(2) or "1"),
                    new_start=int(match.group(3)),
                    new_count=int(match.group(4) or "1"),
                )
                current_file.hunks.append(hunk)
                old_left, new_left = hunk.old_count, hunk.new_count
        elif old_left or new_left:
            if line.startswith("+"):
                current_file.added_lines += 1
                new_left -= 1
            elif line.startswith("-"):
                current_file.deleted_lines += 1
                old_left -= 1
            elif not line.startswith("\\"):
                old_left -= 1
                new_left -= 1
            old_left, new_left = max(old_left, 0), max(new_left, 0)

    if current_file:
        files.append(current_file)

    return [f for f in files if f.path]


def changed_paths(file_diffs: list[FileDiff]) -> list[str]:
    """Flatten file diffs into touched paths, in diff order."""
    paths: list[str] = []
    for fd in file_diffs:
        paths.extend(fd.touched_paths)
    return paths


def _strip_prefix(path: str) -> str:
    path = path.split("\t", 1)[0].strip()
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path
