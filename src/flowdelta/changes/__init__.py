"""Changeset intake: path lists and unified diffs."""

from flowdelta.changes.diff_parser import FileDiff, changed_paths, parse_diff
from flowdelta.changes.models import ChangeSet

__all__ = ["ChangeSet", "FileDiff", "changed_paths", "parse_diff"]
