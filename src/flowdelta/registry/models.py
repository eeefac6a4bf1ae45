"""Data models for registered workflows and match evidence."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field


class Workflow(BaseModel):
    """A documented subsystem with file patterns and architecture diagrams."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    input: str = ""
    output: str = ""
    entry_point: str = ""
    relevant_file_patterns: tuple[str, ...] = ()
    diagram_refs: tuple[str, ...] = ("0",)
    doc_path: str


class MatchEvidence(BaseModel):
    """Which files, via which patterns, made a workflow affected."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    matched_files: tuple[str, ...]
    matched_pattern: str
    pattern_hits: dict[str, tuple[str, ...]] = Field(default_factory=dict)


def slugify(name: str) -> str:
    """Turn a workflow name into a stable id ("Lint Pass (v2)" -> "lint-pass-v2")."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower())
    return slug.strip("-")
