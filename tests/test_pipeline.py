"""Tests for the change-impact pipeline."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from flowdelta.analysis import (
    BatchItem,
    CancelToken,
    ImpactAnalyzer,
    Outcome,
    ValidationStatus,
    Workspace,
    analyze_batch,
)
from flowdelta.analysis.renderer import render_report_json, render_report_markdown
from flowdelta.analysis.workspace import safe_name
from flowdelta.changes import ChangeSet
from flowdelta.config import AnalysisConfig, DiffConfig
from flowdelta.diagram.fmt import ANNOTATIONS_MARKER
from flowdelta.exceptions import DocumentError
from flowdelta.registry.loader import WorkflowRegistry
from flowdelta.validation import BuiltinChecker, CallableChecker, DiagramValidator

from conftest import RELEASE_FLOW, UI_SEQUENCE

LINT_DOC = ".exp/design-workflow-1-lint-pass.md"
UI_DOC = ".exp/design-workflow-2-ui-tests.md"
RELEASE_DOC = ".exp/design-workflow-3-release.md"

LINT_PROPOSED = "flowchart TD\n    A[Parse] --> B[Check]\n    B --> C[Report]\n"
UI_PROPOSED = UI_SEQUENCE.replace(
    "    C-->>R: diagnostics\n", "    R->>C: check flags\n    C-->>R: diagnostics\n"
)


def _analyzer(root: Path, checker=None, **kwargs) -> ImpactAnalyzer:
    registry = WorkflowRegistry.load(root / ".exp" / "workflows.json")
    validator = DiagramValidator(checker or BuiltinChecker())
    return ImpactAnalyzer(registry, Workspace(root), validator, **kwargs)


def _lint_change(changeset_id: str = "pr-1") -> ChangeSet:
    return ChangeSet.from_paths(["clippy_lints/src/foo.rs", "README.md"], changeset_id)


class TestAnalyze:
    def test_updates_matched_workflow(self, tmp_project: Path):
        report = _analyzer(tmp_project).analyze(_lint_change(), {"lint-pass": LINT_PROPOSED})

        assert [e.workflow.id for e in report.entries] == ["lint-pass", "ui-tests", "release"]
        lint = report.entry("lint-pass")
        assert lint.outcome == Outcome.UPDATED
        assert lint.validation_status == ValidationStatus.VALIDATED
        assert lint.evidence.matched_files == ("clippy_lints/src/foo.rs",)
        assert lint.diagrams[0].written
        assert lint.diagram_diff is lint.diagrams[0].diff
        assert lint.diagrams[0].changes["nodes"] == {"A": "unchanged", "B": "unchanged", "C": "added"}
        assert report.entry("ui-tests").outcome == Outcome.UNMATCHED
        assert report.exit_code == 0

        doc = (tmp_project / LINT_DOC).read_text()
        assert ANNOTATIONS_MARKER in doc
        assert doc.startswith("# Lint Pass\n")
        assert doc.endswith("Text after the diagram.\n")

    def test_second_run_is_unchanged(self, tmp_project: Path):
        analyzer = _analyzer(tmp_project)
        analyzer.analyze(_lint_change(), {"lint-pass": LINT_PROPOSED})
        after_first = (tmp_project / LINT_DOC).read_text()

        report = analyzer.analyze(_lint_change(), {"lint-pass": LINT_PROPOSED})

        lint = report.entry("lint-pass")
        assert lint.outcome == Outcome.UNCHANGED
        assert not lint.diagrams[0].written
        assert (tmp_project / LINT_DOC).read_text() == after_first

    def test_sequence_update_by_anchor(self, tmp_project: Path):
        changes = ChangeSet.from_paths(["tests/ui/new_lint.rs"], "pr-2")
        report = _analyzer(tmp_project).analyze(changes, {"ui-tests": {"run": UI_PROPOSED}})
        ui = report.entry("ui-tests")
        assert ui.outcome == Outcome.UPDATED
        assert ui.diagrams[0].changes["edges"]["R->C#1"] == "added"
        assert "R->>C: check flags" in (tmp_project / UI_DOC).read_text()

    def test_parse_error_is_isolated(self, tmp_project: Path):
        changes = ChangeSet.from_paths(["clippy_lints/src/foo.rs", "tests/ui/x.rs"])
        proposals = {"lint-pass": "flowchart TD\n    A -->\n", "ui-tests": UI_PROPOSED}
        before = (tmp_project / LINT_DOC).read_text()

        report = _analyzer(tmp_project).analyze(changes, proposals)

        lint = report.entry("lint-pass")
        assert lint.outcome == Outcome.PARSE_ERROR
        assert lint.needs_review
        assert lint.diagrams[0].message.startswith("proposed:")
        assert report.entry("ui-tests").outcome == Outcome.UPDATED
        assert (tmp_project / LINT_DOC).read_text() == before

    def test_failed_validation_leaves_document(self, tmp_project: Path):
        before = (tmp_project / LINT_DOC).read_text()
        analyzer = _analyzer(tmp_project, checker=CallableChecker(lambda text: "Parse error on line 1"))

        report = analyzer.analyze(_lint_change(), {"lint-pass": LINT_PROPOSED})

        lint = report.entry("lint-pass")
        assert lint.outcome == Outcome.FAILED
        assert lint.validation_status == ValidationStatus.FAILED
        assert lint.needs_review
        assert report.has_failures
        assert report.exit_code == 1
        assert (tmp_project / LINT_DOC).read_text() == before

    def test_direction_change_is_written(self, tmp_project: Path):
        proposal = "flowchart LR\n    A[Parse] --> B[Check]\n"
        analyzer = _analyzer(tmp_project)

        report = analyzer.analyze(_lint_change(), {"lint-pass": proposal})

        lint = report.entry("lint-pass")
        assert lint.outcome == Outcome.UPDATED
        assert lint.validation_status == ValidationStatus.VALIDATED
        assert lint.diagrams[0].written
        assert lint.diagrams[0].diff.is_unchanged()
        doc = (tmp_project / LINT_DOC).read_text()
        assert "flowchart LR\n" in doc
        assert "flowchart TD" not in doc
        assert ANNOTATIONS_MARKER not in doc

        again = analyzer.analyze(_lint_change(), {"lint-pass": proposal})
        assert again.entry("lint-pass").outcome == Outcome.UNCHANGED

    def test_note_only_change_is_written(self, tmp_project: Path):
        changes = ChangeSet.from_paths(["tests/ui/new_lint.rs"], "pr-2")
        proposal = UI_SEQUENCE + "    Note over R: caches results\n"

        report = _analyzer(tmp_project).analyze(changes, {"ui-tests": proposal})

        ui = report.entry("ui-tests")
        assert ui.outcome == Outcome.UPDATED
        assert ui.diagrams[0].written
        assert "Note over R: caches results" in (tmp_project / UI_DOC).read_text()

    def test_quoted_label_with_generics_validates(self, tmp_project: Path):
        proposal = LINT_PROPOSED.replace("C[Report]", 'C["emit(Vec<Lint>)"]')
        report = _analyzer(tmp_project).analyze(_lint_change(), {"lint-pass": proposal})
        assert report.entry("lint-pass").outcome == Outcome.UPDATED
        assert report.exit_code == 0

    def test_identical_proposal_is_unchanged(self, tmp_project: Path):
        proposal = "flowchart TD\n    A[Parse] --> B[Check]\n"
        report = _analyzer(tmp_project).analyze(_lint_change(), {"lint-pass": proposal})
        assert report.entry("lint-pass").outcome == Outcome.UNCHANGED
        assert report.entry("lint-pass").validation_status == ValidationStatus.SKIPPED

    def test_no_proposal(self, tmp_project: Path):
        report = _analyzer(tmp_project).analyze(_lint_change())
        lint = report.entry("lint-pass")
        assert lint.outcome == Outcome.NO_PROPOSAL
        assert not lint.needs_review
        assert lint.validation_status == ValidationStatus.SKIPPED
        assert lint.diagram_diff is None

    def test_flag_unchanged_matched(self, tmp_project: Path):
        analyzer = _analyzer(tmp_project, config=AnalysisConfig(flag_unchanged_matched=True))
        report = analyzer.analyze(_lint_change())
        assert report.entry("lint-pass").needs_review
        assert not report.entry("release").needs_review

    def test_dry_run_writes_nothing(self, tmp_project: Path):
        before = (tmp_project / LINT_DOC).read_text()
        report = _analyzer(tmp_project).analyze(
            _lint_change(), {"lint-pass": LINT_PROPOSED}, dry_run=True
        )
        lint = report.entry("lint-pass")
        assert lint.outcome == Outcome.UPDATED
        assert not lint.diagrams[0].written
        assert ANNOTATIONS_MARKER in lint.diagrams[0].annotated
        assert (tmp_project / LINT_DOC).read_text() == before

    def test_node_identity_by_id(self, tmp_project: Path):
        analyzer = _analyzer(tmp_project, diff_config=DiffConfig(node_identity="id"))
        report = analyzer.analyze(_lint_change(), {"lint-pass": "flowchart TD\n    A[Lex] --> B[Check]\n"})
        assert report.entry("lint-pass").diagrams[0].changes["nodes"] == {
            "A": "changed",
            "B": "unchanged",
        }

    def test_empty_changeset(self, tmp_project: Path):
        report = _analyzer(tmp_project).analyze(ChangeSet(id="empty"), {"lint-pass": LINT_PROPOSED})
        assert report.affected == []
        assert report.counts()["unmatched"] == 3

    def test_unknown_proposals_are_ignored(self, tmp_project: Path):
        report = _analyzer(tmp_project).analyze(_lint_change(), {"nope": LINT_PROPOSED})
        assert report.entry("lint-pass").outcome == Outcome.NO_PROPOSAL

    def test_missing_document_aborts_run(self, tmp_project: Path):
        analyzer = _analyzer(tmp_project)
        (tmp_project / LINT_DOC).unlink()
        with pytest.raises(DocumentError):
            analyzer.analyze(_lint_change(), {"lint-pass": LINT_PROPOSED})

    def test_registry_order_with_many_workers(self, tmp_project: Path):
        changes = ChangeSet.from_paths(["clippy_lints/src/a.rs", "tests/ui/b.rs", "Cargo.toml"])
        analyzer = _analyzer(tmp_project, config=AnalysisConfig(max_workers=8))
        report = analyzer.analyze(changes, {"release": "graph LR\n    X --> Z\n"})
        assert [e.workflow.id for e in report.entries] == ["lint-pass", "ui-tests", "release"]
        assert all(e.matched for e in report.entries)
        assert report.entry("release").outcome == Outcome.UPDATED


class TestCancellation:
    def test_cancelled_before_start(self, tmp_project: Path):
        token = CancelToken()
        token.cancel()
        before = (tmp_project / LINT_DOC).read_text()

        report = _analyzer(tmp_project, cancel_token=token).analyze(
            _lint_change(), {"lint-pass": LINT_PROPOSED}
        )

        assert report.cancelled
        assert report.entry("lint-pass").outcome == Outcome.CANCELLED
        assert report.entry("ui-tests").outcome == Outcome.UNMATCHED
        assert (tmp_project / LINT_DOC).read_text() == before

    def test_cancel_during_validation_skips_write(self, tmp_project: Path):
        before = (tmp_project / LINT_DOC).read_text()
        analyzer = _analyzer(tmp_project)

        def cancel_then_accept(text: str):
            analyzer.cancel()
            return None

        analyzer.validator = DiagramValidator(CallableChecker(cancel_then_accept))
        report = analyzer.analyze(_lint_change(), {"lint-pass": LINT_PROPOSED})

        assert report.entry("lint-pass").outcome == Outcome.CANCELLED
        assert (tmp_project / LINT_DOC).read_text() == before

    def test_interrupt_cancels_remaining_workflows(self, tmp_project: Path):
        changes = ChangeSet.from_paths(["clippy_lints/src/foo.rs", "clippy_lints/Cargo.toml"])
        proposals = {
            "lint-pass": LINT_PROPOSED,
            "release": RELEASE_FLOW + "    Z --> W[Announce]\n",
        }
        before = {doc: (tmp_project / doc).read_text() for doc in (LINT_DOC, RELEASE_DOC)}

        def interrupt(text: str):
            raise KeyboardInterrupt

        analyzer = _analyzer(
            tmp_project,
            checker=CallableChecker(interrupt),
            config=AnalysisConfig(max_workers=1),
        )
        report = analyzer.analyze(changes, proposals)

        assert report.cancelled
        assert report.entry("lint-pass").outcome == Outcome.CANCELLED
        assert report.entry("release").outcome == Outcome.CANCELLED
        assert report.entry("ui-tests").outcome == Outcome.UNMATCHED
        for doc, text in before.items():
            assert (tmp_project / doc).read_text() == text

    def test_cancelled_batch_stops_before_next_changeset(self, tmp_project: Path):
        registry = WorkflowRegistry.load(tmp_project / ".exp" / "workflows.json")
        token = CancelToken()
        items = [
            BatchItem(_lint_change("pr-1"), {"lint-pass": LINT_PROPOSED}),
            BatchItem(_lint_change("pr-2"), {"lint-pass": LINT_PROPOSED}),
        ]

        def cancel_then_accept(text: str):
            token.cancel()
            return None

        reports = analyze_batch(
            registry,
            tmp_project,
            items,
            DiagramValidator(CallableChecker(cancel_then_accept)),
            cancel_token=token,
        )

        assert [r.changeset_id for r in reports] == ["pr-1"]
        assert reports[0].cancelled


class TestConcurrentAnalyses:
    def test_two_analyses_write_one_document(self, tmp_project: Path):
        proposals = [
            LINT_PROPOSED,
            "flowchart TD\n    A[Parse] --> B[Check]\n    B --> D[Fix]\n    D --> A\n",
        ]
        barrier = threading.Barrier(2)
        reports = {}

        def run(i: int) -> None:
            analyzer = _analyzer(tmp_project)
            barrier.wait()
            reports[i] = analyzer.analyze(_lint_change(f"pr-{i}"), {"lint-pass": proposals[i]})

        threads = [threading.Thread(target=run, args=(i,)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        store = Workspace(tmp_project).store
        final = store.load(LINT_DOC, "0")
        annotated = {r.entry("lint-pass").diagrams[0].annotated for r in reports.values()}
        assert final in annotated
        assert BuiltinChecker().check(final).ok
        doc = (tmp_project / LINT_DOC).read_text()
        assert doc.count("```mermaid") == 1
        assert doc.count(ANNOTATIONS_MARKER) == 1
        assert doc.endswith("Text after the diagram.\n")

class TestBatch:
    def test_changesets_are_isolated(self, tmp_project: Path):
        registry = WorkflowRegistry.load(tmp_project / ".exp" / "workflows.json")
        before = (tmp_project / LINT_DOC).read_text()
        items = [
            BatchItem(_lint_change("pr-1"), {"lint-pass": LINT_PROPOSED}),
            BatchItem(_lint_change("pr-2"), {"lint-pass": LINT_PROPOSED}),
        ]

        reports = analyze_batch(registry, tmp_project, items, DiagramValidator(BuiltinChecker()))

        # Each changeset starts from the project's documents, so both update
        assert [r.entry("lint-pass").outcome for r in reports] == [Outcome.UPDATED, Outcome.UPDATED]
        assert (tmp_project / LINT_DOC).read_text() == before
        for changeset_id in ("pr-1", "pr-2"):
            copy = tmp_project / ".flowdelta" / "workspaces" / changeset_id / LINT_DOC
            assert ANNOTATIONS_MARKER in copy.read_text()

    def test_rerun_replaces_workspace(self, tmp_project: Path):
        registry = WorkflowRegistry.load(tmp_project / ".exp" / "workflows.json")
        validator = DiagramValidator(BuiltinChecker())
        items = [BatchItem(_lint_change("pr-1"), {"lint-pass": LINT_PROPOSED})]
        analyze_batch(registry, tmp_project, items, validator)
        [report] = analyze_batch(registry, tmp_project, items, validator)
        assert report.entry("lint-pass").outcome == Outcome.UPDATED

    def test_distinct_ids_get_distinct_workspaces(self):
        assert safe_name("pr-1") == "pr-1"
        assert safe_name("a-b") == "a-b"
        assert safe_name("a/b") != safe_name("a-b")
        assert safe_name("a/b").startswith("a-b-")
        assert safe_name("a/b") == safe_name("a/b")
        assert safe_name("..") != safe_name("/")


class TestReportRendering:
    def test_markdown(self, tmp_project: Path):
        report = _analyzer(tmp_project).analyze(_lint_change(), {"lint-pass": LINT_PROPOSED})
        md = render_report_markdown(report)
        assert "pr-1" in md
        assert "lint-pass" in md
        assert "```mermaid" in md
        assert "clippy_lints/" in md

    def test_markdown_lists_manual_review(self, tmp_project: Path):
        analyzer = _analyzer(tmp_project, checker=CallableChecker(lambda text: "broken"))
        md = render_report_markdown(analyzer.analyze(_lint_change(), {"lint-pass": LINT_PROPOSED}))
        assert "Needs Manual Review" in md

    def test_json(self, tmp_project: Path):
        report = _analyzer(tmp_project).analyze(_lint_change(), {"lint-pass": LINT_PROPOSED})
        data = json.loads(render_report_json(report))
        assert data["changeset_id"] == "pr-1"
        lint = data["entries"][0]
        assert lint["outcome"] == "updated"
        assert lint["validation_status"] == "Validated"
        assert lint["diagrams"][0]["changes"]["edges"]["B->C"] == "added"
        assert "diff" not in lint["diagrams"][0]
