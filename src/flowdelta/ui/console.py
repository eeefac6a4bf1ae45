"""Rich-powered console output for flowdelta."""

from __future__ import annotations

from rich.console import Console as RichConsole
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.tree import Tree

from flowdelta import __version__
from flowdelta.analysis.report import ImpactReport, Outcome
from flowdelta.diagram.differ import DiagramDiff
from flowdelta.diagram.models import ChangeClass
from flowdelta.registry.models import MatchEvidence, Workflow

_CHANGE_STYLE = {
    ChangeClass.UNCHANGED: "dim",
    ChangeClass.ADDED: "green",
    ChangeClass.CHANGED: "yellow",
    ChangeClass.REMOVED: "red",
}

_OUTCOME_STYLE = {
    Outcome.UPDATED: "green",
    Outcome.UNCHANGED: "dim",
    Outcome.NO_PROPOSAL: "cyan",
    Outcome.FAILED: "red",
    Outcome.PARSE_ERROR: "red",
    Outcome.CANCELLED: "yellow",
    Outcome.UNMATCHED: "dim",
}


class Console:
    """Terminal output for flowdelta using Rich."""

    def __init__(self, console: RichConsole | None = None) -> None:
        self.console = console or RichConsole()

    def banner(self) -> None:
        self.console.print(
            Panel(
                f"[bold cyan]flowdelta[/bold cyan] [dim]v{__version__}[/dim]\n"
                "[dim]Keep design diagrams in step with the code[/dim]",
                border_style="cyan",
                padding=(1, 2),
            )
        )

    def success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {message}")

    def error(self, message: str) -> None:
        self.console.print(f"[red]✗[/red] {message}")

    def warning(self, message: str) -> None:
        self.console.print(f"[yellow]![/yellow] {message}")

    def info(self, message: str) -> None:
        self.console.print(f"[blue]i[/blue] {message}")

    def diagram(self, text: str) -> None:
        """Show Mermaid source."""
        self.console.print(Syntax(text, "text", theme="monokai", line_numbers=True))

    def show_registry(self, workflows: list[Workflow]) -> None:
        table = Table(title="Registered Workflows", border_style="cyan")
        table.add_column("Id", style="bold")
        table.add_column("Name")
        table.add_column("Patterns", justify="right", style="cyan")
        table.add_column("Document")
        table.add_column("Diagrams")
        for wf in workflows:
            table.add_row(
                wf.id,
                wf.name,
                str(len(wf.relevant_file_patterns)),
                wf.doc_path,
                ", ".join(wf.diagram_refs),
            )
        self.console.print(table)

    def show_matches(self, evidence: list[MatchEvidence]) -> None:
        """Display matched workflows with the files that matched."""
        for ev in evidence:
            tree = Tree(f"[bold cyan]{ev.workflow_id}[/bold cyan]")
            for pattern, files in ev.pattern_hits.items():
                node = tree.add(f"[bold]{pattern}[/bold] [dim]({len(files)} file(s))[/dim]")
                for f in files:
                    node.add(f"[cyan]{f}[/cyan]")
            self.console.print(tree)

    def show_diff(self, diff: DiagramDiff) -> None:
        """Display the per-element classification of a diagram diff."""
        table = Table(title=f"Diagram diff ({diff.kind.value})", border_style="cyan")
        table.add_column("Element")
        table.add_column("Key", style="bold")
        table.add_column("Change")
        for key, change in diff.node_classes.items():
            style = _CHANGE_STYLE[change]
            table.add_row("node", key, f"[{style}]{change.value}[/{style}]")
        for key, change in diff.edge_classes.items():
            style = _CHANGE_STYLE[change]
            table.add_row("edge", key, f"[{style}]{change.value}[/{style}]")
        self.console.print(table)

    def show_report(self, report: ImpactReport) -> None:
        """Display an impact report summary."""
        table = Table(
            title=f"Impact of '{report.changeset_id or 'changeset'}'", border_style="cyan"
        )
        table.add_column("Workflow", style="bold")
        table.add_column("Files", justify="right")
        table.add_column("Outcome")
        table.add_column("Validation")
        table.add_column("Review")
        for entry in report.entries:
            style = _OUTCOME_STYLE[entry.outcome]
            table.add_row(
                entry.workflow.id,
                str(len(entry.evidence.matched_files)) if entry.evidence else "-",
                f"[{style}]{entry.outcome.value}[/{style}]",
                entry.validation_status.value,
                "[red]yes[/red]" if entry.needs_review else "",
            )
        self.console.print(table)
