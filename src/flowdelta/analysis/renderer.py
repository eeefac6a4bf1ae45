"""Render impact reports as Markdown or JSON.

The Markdown report carries:
  - a summary table (outcome counts)
  - one section per affected workflow with its evidence and diagram results
  - the annotated diagram of every validated update
  - the list of workflows that need manual review
"""

from __future__ import annotations

import json

from flowdelta.analysis.report import ImpactReport, Outcome, ReportEntry, ValidationStatus
from flowdelta.diagram.fmt import mermaid_block

_OUTCOME_MARK = {
    Outcome.UPDATED: "+",
    Outcome.UNCHANGED: "=",
    Outcome.NO_PROPOSAL: "~",
    Outcome.FAILED: "!",
    Outcome.PARSE_ERROR: "!",
    Outcome.CANCELLED: "x",
    Outcome.UNMATCHED: " ",
}


def render_report_json(report: ImpactReport) -> str:
    return json.dumps(report.model_dump(mode="json"), indent=2)


def render_report_markdown(report: ImpactReport) -> str:
    """Render the full impact report as GitHub-flavored Markdown."""
    sections: list[str] = []

    title = f"## Design Impact: `{report.changeset_id}`" if report.changeset_id else "## Design Impact"
    sections.append(title)
    sections.append("")

    affected = report.affected
    if not affected:
        sections.append("> No documented workflows are affected by this change.")
        sections.append("")
        sections.append(_footer(report))
        return "\n".join(sections)

    counts = report.counts()
    sections.append("| Affected | Updated | Unchanged | No proposal | Needs review |")
    sections.append("|:---:|:---:|:---:|:---:|:---:|")
    sections.append(
        f"| {len(affected)} | "
        f"{counts[Outcome.UPDATED.value]} | "
        f"{counts[Outcome.UNCHANGED.value]} | "
        f"{counts[Outcome.NO_PROPOSAL.value]} | "
        f"{sum(1 for e in report.entries if e.needs_review)} |"
    )
    sections.append("")

    if report.cancelled:
        sections.append("> The run was cancelled; workflows marked `cancelled` were not processed.")
        sections.append("")

    sections.append("### Affected Workflows")
    sections.append("")
    sections.append("| Workflow | Matched by | Files | Outcome | Validation |")
    sections.append("|:---------|:-----------|:-----:|:--------|:----------:|")
    for entry in affected:
        sections.append(
            f"| `{entry.workflow.id}` | "
            f"`{entry.evidence.matched_pattern}` | "
            f"{len(entry.evidence.matched_files)} | "
            f"{_OUTCOME_MARK[entry.outcome]} {entry.outcome.value} | "
            f"{entry.validation_status.value} |"
        )
    sections.append("")

    for entry in affected:
        sections.extend(_entry_details(entry))

    review = [e for e in report.entries if e.needs_review]
    if review:
        sections.append("### Needs Manual Review")
        sections.append("")
        for entry in review:
            reason = next((d.message for d in entry.diagrams if d.message), entry.outcome.value)
            sections.append(f"- `{entry.workflow.id}` ({entry.workflow.doc_path}): {reason}")
        sections.append("")

    sections.append(_footer(report))
    return "\n".join(sections)


def _entry_details(entry: ReportEntry) -> list[str]:
    lines = ["<details>"]
    lines.append(
        f"<summary><code>{entry.workflow.id}</code>: {entry.workflow.name} "
        f"({entry.outcome.value})</summary>"
    )
    lines.append("")

    if entry.evidence is not None:
        lines.append("**Matched files:**")
        lines.append("```")
        lines.extend(_render_file_tree(list(entry.evidence.matched_files)))
        lines.append("```")
        lines.append("")

    for diagram in entry.diagrams:
        header = f"**Diagram `{diagram.ref}`**: {diagram.outcome.value}"
        if diagram.validation_status != ValidationStatus.SKIPPED:
            header += f", {diagram.validation_status.value}"
        if diagram.repairs:
            header += f" (repairs: {', '.join(diagram.repairs)})"
        lines.append(header)
        lines.append("")
        if diagram.diff is not None and not diagram.diff.is_unchanged():
            counts = diagram.diff.counts()
            lines.append(
                f"> +{counts['added']} added, ~{counts['changed']} changed, "
                f"-{counts['removed']} removed"
            )
            downstream = diagram.footprint.get("downstream", [])
            if downstream:
                lines.append(f"> Downstream of the change: {', '.join(f'`{n}`' for n in downstream)}")
            lines.append("")
        if diagram.message:
            lines.append(f"> {diagram.message.splitlines()[0]}")
            lines.append("")
        if diagram.annotated:
            lines.append(mermaid_block(diagram.annotated))

    lines.append("</details>")
    lines.append("")
    return lines


def _render_file_tree(files: list[str]) -> list[str]:
    """Render a list of file paths as an ASCII tree."""
    if not files:
        return []

    tree: dict = {}
    for fp in sorted(files):
        node = tree
        for part in fp.split("/"):
            node = node.setdefault(part, {})

    lines: list[str] = []
    _render_tree_recursive(tree, "", lines, is_root=True)
    return lines


def _render_tree_recursive(node: dict, prefix: str, lines: list[str], is_root: bool = False) -> None:
    items = list(node.items())
    for i, (name, children) in enumerate(items):
        is_last_item = i == len(items) - 1
        if is_root:
            connector = ""
            next_prefix = ""
        else:
            connector = "`-- " if is_last_item else "|-- "
            next_prefix = prefix + ("    " if is_last_item else "|   ")

        if children:
            lines.append(f"{prefix}{connector}{name}/")
            _render_tree_recursive(children, next_prefix, lines)
        else:
            lines.append(f"{prefix}{connector}{name}")


def _footer(report: ImpactReport) -> str:
    return (
        "---\n"
        f"*{len(report.changed_files)} changed file(s) checked against "
        f"{len(report.entries)} registered workflow(s) by flowdelta*"
    )
