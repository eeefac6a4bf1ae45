"""Change-impact analysis: pipeline, workspaces and reports."""

from flowdelta.analysis.pipeline import BatchItem, ImpactAnalyzer, analyze_batch
from flowdelta.analysis.report import (
    DiagramOutcome,
    ImpactReport,
    ImpactReportAssembler,
    Outcome,
    ReportEntry,
    ValidationStatus,
)
from flowdelta.analysis.workspace import CancelToken, Workspace

__all__ = [
    "BatchItem",
    "CancelToken",
    "DiagramOutcome",
    "ImpactAnalyzer",
    "ImpactReport",
    "ImpactReportAssembler",
    "Outcome",
    "ReportEntry",
    "ValidationStatus",
    "Workspace",
    "analyze_batch",
]
