"""The change-impact pipeline.

For each workflow touched by a changeset and given a proposed diagram:
load the current diagram, parse both versions, diff them, render the
annotated delta, validate it, and persist it only when it validated.
Workflows run concurrently; results come back in registry order.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from flowdelta.analysis.report import (
    DiagramOutcome,
    ImpactReport,
    ImpactReportAssembler,
    Outcome,
    ReportEntry,
    ValidationStatus,
)
from flowdelta.analysis.workspace import CancelToken, Workspace
from flowdelta.changes.models import ChangeSet
from flowdelta.config import AnalysisConfig, DiffConfig
from flowdelta.diagram.core import parse, parse_or_empty, render, render_diff
from flowdelta.diagram.differ import DiagramDiffer
from flowdelta.diagram.query import change_footprint
from flowdelta.exceptions import AnalysisCancelled, DiffError, ParseError
from flowdelta.registry.loader import WorkflowRegistry
from flowdelta.registry.models import MatchEvidence, Workflow
from flowdelta.validation.validator import DiagramValidator

logger = logging.getLogger("flowdelta.analysis")

# {workflow_id: text} or {workflow_id: {diagram_ref: text}}
Proposals = Mapping[str, "str | Mapping[str, str]"]


@dataclass
class BatchItem:
    """One changeset of a batch run with its proposed diagrams."""

    changeset: ChangeSet
    proposals: dict = field(default_factory=dict)


class ImpactAnalyzer:
    """Runs the pipeline for one workspace.

    Args:
        registry: The loaded workflow registry.
        workspace: Where design documents are read and written.
        validator: Syntax validator for rendered diagrams.
        config: Pipeline settings (worker count, review policy).
        diff_config: Node identity policy for the differ.
        cancel_token: Checked between workflows and before every write.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        workspace: Workspace,
        validator: DiagramValidator,
        config: AnalysisConfig | None = None,
        diff_config: DiffConfig | None = None,
        cancel_token: CancelToken | None = None,
    ) -> None:
        self.registry = registry
        self.workspace = workspace
        self.validator = validator
        self.config = config or AnalysisConfig()
        diff_config = diff_config or DiffConfig()
        self.differ = DiagramDiffer({} if diff_config.node_identity == "id" else None)
        self.cancel_token = cancel_token or CancelToken()
        self.assembler = ImpactReportAssembler(self.config.flag_unchanged_matched)

    def analyze(
        self,
        changeset: ChangeSet,
        proposals: Proposals | None = None,
        dry_run: bool = False,
    ) -> ImpactReport:
        """Analyze one changeset.

        Args:
            changeset: The touched files.
            proposals: Proposed diagram text per workflow id.
            dry_run: Do everything except writing documents.

        An interrupt while waiting cancels every workflow that has not yet
        written, and the report comes back with `cancelled` set.

        Raises:
            DocumentError: A design document is missing or unreadable; the
                run is aborted.
        """
        proposals = proposals or {}
        evidence = {ev.workflow_id: ev for ev in self.registry.match(changeset.paths)}
        logger.info(
            f"Changeset '{changeset.id}': {len(changeset)} file(s), "
            f"{len(evidence)} workflow(s) affected"
        )
        for unknown in sorted(set(proposals) - {wf.id for wf in self.registry}):
            logger.warning(f"Proposal for unknown workflow '{unknown}' ignored")

        entries: dict[str, ReportEntry] = {}
        futures: dict[str, tuple[Workflow, Future]] = {}
        workers = max(1, self.config.max_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="flowdelta") as pool:
            for wf in self.registry:
                ev = evidence.get(wf.id)
                if ev is None:
                    entries[wf.id] = self.assembler.unmatched(wf)
                    continue
                futures[wf.id] = (
                    wf,
                    pool.submit(self._run_workflow, wf, ev, proposals.get(wf.id), dry_run),
                )
            for workflow_id, (wf, future) in futures.items():
                try:
                    entries[workflow_id] = future.result()
                except KeyboardInterrupt:
                    logger.warning("Interrupted; cancelling the remaining workflows")
                    self.cancel_token.cancel()
                    entries[workflow_id] = self._settle(future, wf, evidence[workflow_id])

        return self.assembler.assemble(
            changeset.id,
            list(changeset.paths),
            [entries[wf.id] for wf in self.registry],
            cancelled=self.cancel_token.cancelled,
        )

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def _settle(self, future: Future, workflow: Workflow, evidence: MatchEvidence) -> ReportEntry:
        """Wait for a unit that was running when the run was interrupted."""
        try:
            return future.result()
        except KeyboardInterrupt:
            return self.assembler.cancelled(workflow, evidence)

    def _run_workflow(
        self,
        workflow: Workflow,
        evidence: MatchEvidence,
        proposal: str | Mapping[str, str] | None,
        dry_run: bool,
    ) -> ReportEntry:
        if self.cancel_token.cancelled:
            return self.assembler.cancelled(workflow, evidence)

        proposed = _proposals_by_ref(workflow, proposal)
        diagrams: list[DiagramOutcome] = []
        for ref in workflow.diagram_refs:
            if ref not in proposed:
                diagrams.append(DiagramOutcome(ref=ref, outcome=Outcome.NO_PROPOSAL))
            elif self.cancel_token.cancelled:
                diagrams.append(DiagramOutcome(ref=ref, outcome=Outcome.CANCELLED))
            else:
                diagrams.append(self._update_diagram(workflow, ref, proposed[ref], dry_run))
        return self.assembler.entry(workflow, evidence, diagrams)

    def _update_diagram(
        self, workflow: Workflow, ref: str, proposed_text: str, dry_run: bool
    ) -> DiagramOutcome:
        store = self.workspace.store
        current_text = store.load(workflow.doc_path, ref)

        try:
            new = parse(proposed_text)
        except ParseError as e:
            logger.warning(f"[{workflow.id}] proposed diagram [{ref}] does not parse: {e}")
            return DiagramOutcome(ref=ref, outcome=Outcome.PARSE_ERROR, message=f"proposed: {e}")
        try:
            old = parse_or_empty(current_text, new.kind)
        except ParseError as e:
            logger.warning(f"[{workflow.id}] current diagram [{ref}] does not parse: {e}")
            return DiagramOutcome(ref=ref, outcome=Outcome.PARSE_ERROR, message=f"current: {e}")

        try:
            diff = self.differ.diff(old, new)
        except DiffError as e:
            return DiagramOutcome(ref=ref, outcome=Outcome.PARSE_ERROR, message=str(e))

        if diff.is_unchanged():
            if render(old) == render(new):
                logger.info(f"[{workflow.id}] diagram [{ref}] has no change")
                return DiagramOutcome(ref=ref, outcome=Outcome.UNCHANGED, diff=diff)
            # Same structure, different presentation
            logger.info(f"[{workflow.id}] diagram [{ref}] changes presentation only")

        footprint = change_footprint(diff)
        validation = self.validator.validate(render_diff(diff))
        if not validation.ok:
            logger.warning(
                f"[{workflow.id}] diagram [{ref}] failed validation after "
                f"{validation.attempts} check(s); leaving document untouched"
            )
            return DiagramOutcome(
                ref=ref,
                outcome=Outcome.FAILED,
                validation_status=ValidationStatus.FAILED,
                diff=diff,
                message=validation.message,
                repairs=validation.repairs,
                footprint=footprint,
            )

        outcome = DiagramOutcome(
            ref=ref,
            outcome=Outcome.UPDATED,
            validation_status=ValidationStatus.VALIDATED,
            diff=diff,
            annotated=validation.text,
            repairs=validation.repairs,
            footprint=footprint,
        )
        try:
            self.cancel_token.raise_if_cancelled()
        except AnalysisCancelled:
            logger.info(f"[{workflow.id}] cancelled before writing diagram [{ref}]")
            outcome.outcome = Outcome.CANCELLED
            return outcome
        if dry_run:
            return outcome

        outcome.written = store.persist(workflow.doc_path, ref, validation.text)
        if not outcome.written:
            outcome.outcome = Outcome.UNCHANGED
        return outcome


def analyze_batch(
    registry: WorkflowRegistry,
    project_root: str | Path,
    items: list[BatchItem],
    validator: DiagramValidator,
    config: AnalysisConfig | None = None,
    diff_config: DiffConfig | None = None,
    cancel_token: CancelToken | None = None,
    dry_run: bool = False,
) -> list[ImpactReport]:
    """Analyze several changesets, each in its own isolated workspace copy.

    Changesets never see each other's writes: every one starts from the
    project's documents as they are on disk.
    """
    config = config or AnalysisConfig()
    token = cancel_token or CancelToken()
    doc_paths = {wf.doc_path for wf in registry}
    reports: list[ImpactReport] = []
    for item in items:
        if token.cancelled:
            logger.warning(f"Batch cancelled; {len(items) - len(reports)} changeset(s) not analyzed")
            break
        workspace = Workspace.isolated_copy(
            project_root, config.workspace_dir, item.changeset.id, doc_paths
        )
        analyzer = ImpactAnalyzer(
            registry,
            workspace,
            validator,
            config=config,
            diff_config=diff_config,
            cancel_token=token,
        )
        reports.append(analyzer.analyze(item.changeset, item.proposals, dry_run=dry_run))
    return reports


def _proposals_by_ref(
    workflow: Workflow, proposal: str | Mapping[str, str] | None
) -> dict[str, str]:
    if proposal is None:
        return {}
    if isinstance(proposal, str):
        return {workflow.diagram_refs[0]: proposal} if workflow.diagram_refs else {}
    unknown = set(proposal) - set(workflow.diagram_refs)
    if unknown:
        logger.warning(
            f"[{workflow.id}] proposals for unregistered diagram(s) ignored: {sorted(unknown)}"
        )
    return {ref: text for ref, text in proposal.items() if ref in workflow.diagram_refs}
