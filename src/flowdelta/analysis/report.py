"""Impact report models and the assembler that builds one entry per workflow."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, computed_field

from flowdelta.diagram.differ import DiagramDiff
from flowdelta.registry.models import MatchEvidence, Workflow


class Outcome(str, Enum):
    """What happened to a workflow (or one of its diagrams) during a run."""

    UNMATCHED = "unmatched"
    NO_PROPOSAL = "no-proposal"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed-manual-review"
    PARSE_ERROR = "parse-error"
    CANCELLED = "cancelled"


class ValidationStatus(str, Enum):
    VALIDATED = "Validated"
    FAILED = "Failed"
    SKIPPED = "Skipped"


# When a workflow has several diagrams, the entry reports the most severe one
_SEVERITY = [
    Outcome.FAILED,
    Outcome.PARSE_ERROR,
    Outcome.CANCELLED,
    Outcome.UPDATED,
    Outcome.UNCHANGED,
    Outcome.NO_PROPOSAL,
]


class DiagramOutcome(BaseModel):
    """Result for one diagram reference of a workflow."""

    ref: str
    outcome: Outcome
    validation_status: ValidationStatus = ValidationStatus.SKIPPED
    diff: DiagramDiff | None = Field(default=None, exclude=True)
    annotated: str = ""  # the validated visual delta
    written: bool = False
    message: str = ""
    repairs: list[str] = Field(default_factory=list)
    footprint: dict = Field(default_factory=dict)

    @computed_field
    @property
    def changes(self) -> dict[str, dict[str, str]] | None:
        if self.diff is None:
            return None
        return {
            "nodes": {k: v.value for k, v in self.diff.node_classes.items()},
            "edges": {k: v.value for k, v in self.diff.edge_classes.items()},
        }


class ReportEntry(BaseModel):
    """The report line for one registered workflow."""

    workflow: Workflow
    evidence: MatchEvidence | None = None
    diagrams: list[DiagramOutcome] = Field(default_factory=list)
    validation_status: ValidationStatus = ValidationStatus.SKIPPED
    outcome: Outcome = Outcome.UNMATCHED
    needs_review: bool = False

    @property
    def matched(self) -> bool:
        return self.evidence is not None

    @property
    def diagram_diff(self) -> DiagramDiff | None:
        """The diff of the first diagram that has one."""
        for diagram in self.diagrams:
            if diagram.diff is not None:
                return diagram.diff
        return None


class ImpactReport(BaseModel):
    """Ordered entries, one per registered workflow."""

    changeset_id: str = ""
    changed_files: list[str] = Field(default_factory=list)
    entries: list[ReportEntry] = Field(default_factory=list)
    cancelled: bool = False

    def entry(self, workflow_id: str) -> ReportEntry | None:
        for e in self.entries:
            if e.workflow.id == workflow_id:
                return e
        return None

    @property
    def affected(self) -> list[ReportEntry]:
        return [e for e in self.entries if e.matched]

    @property
    def has_failures(self) -> bool:
        return any(e.validation_status == ValidationStatus.FAILED for e in self.entries)

    @property
    def exit_code(self) -> int:
        return 1 if self.has_failures else 0

    def counts(self) -> dict[str, int]:
        counts = {o.value: 0 for o in Outcome}
        for e in self.entries:
            counts[e.outcome.value] += 1
        return counts


class ImpactReportAssembler:
    """Turns per-workflow results into report entries.

    Args:
        flag_unchanged_matched: Mark matched workflows whose diagrams were not
            updated (no proposal, or no structural change) as needing review.
    """

    def __init__(self, flag_unchanged_matched: bool = False) -> None:
        self.flag_unchanged_matched = flag_unchanged_matched

    def unmatched(self, workflow: Workflow) -> ReportEntry:
        return ReportEntry(workflow=workflow)

    def entry(
        self,
        workflow: Workflow,
        evidence: MatchEvidence,
        diagrams: list[DiagramOutcome],
    ) -> ReportEntry:
        if not diagrams:
            diagrams = [DiagramOutcome(ref=ref, outcome=Outcome.NO_PROPOSAL) for ref in workflow.diagram_refs]

        outcome = Outcome.NO_PROPOSAL
        present = {d.outcome for d in diagrams}
        for candidate in _SEVERITY:
            if candidate in present:
                outcome = candidate
                break

        statuses = {d.validation_status for d in diagrams}
        if ValidationStatus.FAILED in statuses:
            status = ValidationStatus.FAILED
        elif ValidationStatus.VALIDATED in statuses:
            status = ValidationStatus.VALIDATED
        else:
            status = ValidationStatus.SKIPPED

        needs_review = outcome in (Outcome.FAILED, Outcome.PARSE_ERROR)
        if self.flag_unchanged_matched and outcome in (Outcome.NO_PROPOSAL, Outcome.UNCHANGED):
            needs_review = True

        return ReportEntry(
            workflow=workflow,
            evidence=evidence,
            diagrams=diagrams,
            validation_status=status,
            outcome=outcome,
            needs_review=needs_review,
        )

    def cancelled(self, workflow: Workflow, evidence: MatchEvidence | None) -> ReportEntry:
        return ReportEntry(
            workflow=workflow,
            evidence=evidence,
            diagrams=[DiagramOutcome(ref=ref, outcome=Outcome.CANCELLED) for ref in workflow.diagram_refs],
            outcome=Outcome.CANCELLED,
        )

    def assemble(
        self,
        changeset_id: str,
        changed_files: list[str],
        entries: list[ReportEntry],
        cancelled: bool = False,
    ) -> ImpactReport:
        return ImpactReport(
            changeset_id=changeset_id,
            changed_files=list(changed_files),
            entries=entries,
            cancelled=cancelled,
        )
