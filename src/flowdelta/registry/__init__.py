"""Workflow registry and changeset path matching."""

from flowdelta.registry.loader import WorkflowRegistry
from flowdelta.registry.matcher import PathMatcher, compile_pattern, match, normalize_path
from flowdelta.registry.models import MatchEvidence, Workflow

__all__ = [
    "MatchEvidence",
    "PathMatcher",
    "Workflow",
    "WorkflowRegistry",
    "compile_pattern",
    "match",
    "normalize_path",
]
