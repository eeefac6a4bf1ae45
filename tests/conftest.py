"""Shared test fixtures for flowdelta."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from flowdelta.config import ProjectConfig, save_config

LINT_FLOW = """\
flowchart TD
    A[Parse] --> B[Check]
"""

UI_SEQUENCE = """\
sequenceDiagram
    participant R as Runner
    participant C as Compiler
    R->>C: compile test
    C-->>R: diagnostics
"""

RELEASE_FLOW = """\
graph LR
    subgraph build [Build]
        X[Bump version] --> Y[Tag]
    end
    Y --> Z[Publish]
"""

REGISTRY = {
    "workflows": [
        {
            "name": "Lint Pass",
            "description": "Runs lint passes over the crate",
            "input": "crate sources",
            "output": "diagnostics",
            "entry_point": "clippy_lints/src/lib.rs",
            "relevant_files": ["clippy_lints/src/"],
            "doc": ".exp/design-workflow-1-lint-pass.md",
        },
        {
            "id": "ui-tests",
            "name": "UI Tests",
            "description": "Compiles UI test cases and compares output",
            "input": ["tests/ui/*.rs"],
            "output": ["*.stderr"],
            "entry_point": "tests/compile-test.rs",
            "relevant_files": ["tests/ui/", "tests/compile-test.rs"],
            "doc": ".exp/design-workflow-2-ui-tests.md",
            "diagrams": ["run"],
        },
        {
            "name": "Release",
            "relevant_files": ["**/Cargo.toml"],
            "doc": ".exp/design-workflow-3-release.md",
        },
    ]
}


def _doc(title: str, diagram: str, anchor: str | None = None) -> str:
    lines = [f"# {title}", "", "Overview of the workflow.", ""]
    if anchor:
        lines.append(f"<!-- diagram: {anchor} -->")
    lines.append("```mermaid")
    lines.append(diagram.rstrip("\n"))
    lines.append("```")
    lines.append("")
    lines.append("## Notes")
    lines.append("")
    lines.append("Text after the diagram.")
    return "\n".join(lines) + "\n"


@pytest.fixture
def tmp_project(tmp_path: Path) -> Path:
    """A project with a workflow registry and three design documents."""
    exp = tmp_path / ".exp"
    exp.mkdir()
    (exp / "workflows.json").write_text(json.dumps(REGISTRY, indent=2))
    (exp / "design-workflow-1-lint-pass.md").write_text(_doc("Lint Pass", LINT_FLOW))
    (exp / "design-workflow-2-ui-tests.md").write_text(_doc("UI Tests", UI_SEQUENCE, anchor="run"))
    (exp / "design-workflow-3-release.md").write_text(_doc("Release", RELEASE_FLOW))
    return tmp_path


@pytest.fixture
def configured_project(tmp_project: Path) -> Path:
    """tmp_project with a saved config using the offline checker."""
    config = ProjectConfig(name="demo", root_path=str(tmp_project))
    config.validator.backend = "builtin"
    config.analysis.max_workers = 2
    save_config(tmp_project, config)
    return tmp_project
