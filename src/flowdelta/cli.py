"""Command-line interface for flowdelta."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from flowdelta import __version__
from flowdelta.config import (
    ProjectConfig,
    find_project_root,
    get_flowdelta_dir,
    load_config,
    save_config,
    set_config_value,
)
from flowdelta.exceptions import FlowDeltaError
from flowdelta.ui.console import Console

console = Console()


def _get_project_root(path: str | None = None) -> Path:
    """Find the project root or error."""
    if path:
        root = Path(path).resolve()
        if not root.exists():
            console.error(f"Path does not exist: {path}")
            sys.exit(1)
        return root

    root = find_project_root()
    if root is None:
        console.error(
            "No flowdelta project found. Run 'flowdelta init' first, "
            "or specify a path with --path."
        )
        sys.exit(1)
    return root


def _load_config(root: Path) -> ProjectConfig:
    try:
        return load_config(root)
    except FlowDeltaError as e:
        console.error(str(e))
        sys.exit(1)


def _load_registry(root: Path, config: ProjectConfig, verify_docs: bool | None = None):
    """Load the workflow registry or exit with an error."""
    from flowdelta.registry.loader import WorkflowRegistry

    registry_path = root / config.registry.path
    verify = config.registry.verify_docs if verify_docs is None else verify_docs
    try:
        return WorkflowRegistry.load(registry_path, root=root, verify_docs=verify)
    except FlowDeltaError as e:
        console.error(str(e))
        sys.exit(1)


def _build_validator(config: ProjectConfig):
    from flowdelta.validation.checkers import create_checker
    from flowdelta.validation.validator import DiagramValidator

    return DiagramValidator(create_checker(config.validator), max_repairs=config.validator.max_repairs)


def _read_changeset(changes: str, changeset_id: str):
    from flowdelta.changes.models import ChangeSet

    try:
        return ChangeSet.from_file(changes, changeset_id)
    except OSError as e:
        console.error(f"Cannot read changes file: {e}")
        sys.exit(1)


def _read_proposals(proposed: str | None) -> dict:
    if not proposed:
        return {}
    try:
        data = json.loads(Path(proposed).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.error(f"Cannot read proposals file: {e}")
        sys.exit(1)
    if not isinstance(data, dict):
        console.error("Proposals file must map workflow ids to diagram text")
        sys.exit(1)
    return data


def _write_report_artifacts(root: Path, config: ProjectConfig, report) -> tuple[Path, Path]:
    from flowdelta.analysis.renderer import render_report_json, render_report_markdown
    from flowdelta.analysis.workspace import safe_name

    report_dir = root / config.analysis.report_dir
    report_dir.mkdir(parents=True, exist_ok=True)
    name = safe_name(report.changeset_id)
    json_path = report_dir / f"{name}.json"
    md_path = report_dir / f"{name}.md"
    json_path.write_text(render_report_json(report), encoding="utf-8")
    md_path.write_text(render_report_markdown(report), encoding="utf-8")
    return json_path, md_path


@click.group()
@click.version_option(version=__version__, prog_name="flowdelta")
@click.option("--verbose", "-v", is_flag=True, help="Log pipeline progress.")
def main(verbose: bool):
    """flowdelta - keep workflow design diagrams in step with code changes."""
    if verbose:
        from rich.logging import RichHandler

        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=console.console, show_path=False)],
        )


@main.command()
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option("--registry", default=None, help="Registry file, relative to the project root.")
@click.option(
    "--backend",
    type=click.Choice(["mmdc", "builtin"]),
    default=None,
    help="Diagram syntax checker.",
)
def init(path: str | None, registry: str | None, backend: str | None):
    """Initialize flowdelta for a repository."""
    root = Path(path or ".").resolve()
    if not root.exists():
        console.error(f"Path does not exist: {root}")
        sys.exit(1)

    console.banner()
    console.info(f"Initializing flowdelta for: {root}")

    config = _load_config(root)
    config.name = root.name
    config.root_path = str(root)
    if registry:
        config.registry.path = registry
    if backend:
        config.validator.backend = backend

    save_config(root, config)
    console.success(f"Configuration saved to {get_flowdelta_dir(root)}")

    registry_path = root / config.registry.path
    if not registry_path.exists():
        console.warning(f"No workflow registry at {config.registry.path} yet")
        return
    reg = _load_registry(root, config)
    console.success(f"Registry OK: {len(reg)} workflow(s)")


@main.command("registry")
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option("--no-verify", is_flag=True, help="Skip checking diagram references.")
def registry_cmd(path: str | None, no_verify: bool):
    """List the registered workflows."""
    root = _get_project_root(path)
    config = _load_config(root)
    reg = _load_registry(root, config, verify_docs=False if no_verify else None)
    console.show_registry(list(reg))


@main.command("match")
@click.option("--changes", "-c", required=True, type=click.Path(exists=True), help="Path list or unified diff.")
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text")
def match_cmd(changes: str, path: str | None, output_format: str):
    """Show which workflows a change touches."""
    root = _get_project_root(path)
    config = _load_config(root)
    reg = _load_registry(root, config, verify_docs=False)
    changeset = _read_changeset(changes, "")
    evidence = reg.match(changeset.paths)

    if output_format == "json":
        click.echo(json.dumps([ev.model_dump(mode="json") for ev in evidence], indent=2))
        return
    if not evidence:
        console.info("No documented workflows are affected")
        return
    console.show_matches(evidence)


@main.command("diff")
@click.argument("old", type=click.Path(exists=True))
@click.argument("new", type=click.Path(exists=True))
@click.option("--ref", default="0", help="Diagram block to use when a file is Markdown.")
@click.option("--by-id", is_flag=True, help="Pair nodes by id only (a relabel is a change).")
@click.option("--render", "show_render", is_flag=True, help="Print the annotated diagram.")
def diff_cmd(old: str, new: str, ref: str, by_id: bool, show_render: bool):
    """Structurally diff two diagrams (Mermaid files or Markdown documents)."""
    from flowdelta.diagram.core import parse, parse_or_empty, render_diff
    from flowdelta.diagram.differ import diff

    try:
        new_graph = parse(_diagram_text(new, ref))
        old_graph = parse_or_empty(_diagram_text(old, ref), new_graph.kind)
        result = diff(old_graph, new_graph, id_map={} if by_id else None)
    except FlowDeltaError as e:
        console.error(str(e))
        sys.exit(1)

    console.show_diff(result)
    if show_render:
        console.diagram(render_diff(result))


def _diagram_text(path: str, ref: str) -> str:
    from flowdelta.docs.store import DesignDocStore

    p = Path(path)
    if p.suffix.lower() in (".md", ".markdown"):
        return DesignDocStore(p.parent).load(p.name, ref)
    return p.read_text(encoding="utf-8")


@main.command()
@click.argument("changeset_id")
@click.option("--changes", "-c", required=True, type=click.Path(exists=True), help="Path list or unified diff.")
@click.option("--proposed", default=None, type=click.Path(exists=True), help="Proposed diagrams (JSON).")
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option(
    "--format", "output_format", type=click.Choice(["markdown", "json"]), default="markdown"
)
@click.option("--dry-run", is_flag=True, help="Validate updates but do not write documents.")
def analyze(
    changeset_id: str,
    changes: str,
    proposed: str | None,
    path: str | None,
    output_format: str,
    dry_run: bool,
):
    """Analyze a changeset and update the affected workflow diagrams.

    Exits with status 1 when a diagram update fails validation; the
    affected document is left untouched and the workflow is flagged for
    manual review.
    """
    from flowdelta.analysis.pipeline import ImpactAnalyzer
    from flowdelta.analysis.renderer import render_report_json, render_report_markdown
    from flowdelta.analysis.workspace import Workspace

    root = _get_project_root(path)
    config = _load_config(root)
    reg = _load_registry(root, config)
    changeset = _read_changeset(changes, changeset_id)
    proposals = _read_proposals(proposed)

    analyzer = ImpactAnalyzer(
        reg,
        Workspace(root, changeset_id=changeset_id),
        _build_validator(config),
        config=config.analysis,
        diff_config=config.diff,
    )
    try:
        report = analyzer.analyze(changeset, proposals, dry_run=dry_run)
    except FlowDeltaError as e:
        console.error(str(e))
        sys.exit(1)

    if not dry_run:
        _, md_path = _write_report_artifacts(root, config, report)
        if output_format != "json":
            console.success(f"Report written to {md_path.parent}")

    if output_format == "json":
        click.echo(render_report_json(report))
    else:
        click.echo(render_report_markdown(report))
    if report.cancelled:
        console.warning("Cancelled; workflows after the interrupt were not updated")
        sys.exit(130)
    sys.exit(report.exit_code)


@main.command()
@click.argument("manifest", type=click.Path(exists=True))
@click.option("--path", "-p", default=None, help="Path to the project root.")
@click.option("--dry-run", is_flag=True, help="Validate updates but do not write documents.")
def batch(manifest: str, path: str | None, dry_run: bool):
    """Analyze several changesets, each in an isolated workspace.

    MANIFEST is a JSON list of {"id", "changes", "proposed"} objects; file
    paths are relative to the manifest. Inline "paths" and "proposals" are
    accepted instead of files.
    """
    from flowdelta.analysis.pipeline import BatchItem, analyze_batch
    from flowdelta.changes.models import ChangeSet

    root = _get_project_root(path)
    config = _load_config(root)
    reg = _load_registry(root, config)

    manifest_path = Path(manifest)
    try:
        records = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.error(f"Cannot read manifest: {e}")
        sys.exit(1)
    if not isinstance(records, list):
        console.error("Manifest must be a list of changesets")
        sys.exit(1)

    items: list[BatchItem] = []
    for i, rec in enumerate(records):
        problem = _manifest_problem(rec)
        if problem:
            console.error(f"Manifest entry {i + 1}: {problem}")
            sys.exit(1)
        changeset_id = str(rec.get("id") or f"changeset-{i + 1}")
        if "paths" in rec:
            changeset = ChangeSet.from_paths(rec["paths"], changeset_id)
        else:
            changeset = _read_changeset(str(manifest_path.parent / rec["changes"]), changeset_id)
        if "proposals" in rec:
            proposals = rec["proposals"]
        else:
            proposed = rec.get("proposed")
            proposals = _read_proposals(str(manifest_path.parent / proposed) if proposed else None)
        items.append(BatchItem(changeset=changeset, proposals=proposals))

    try:
        reports = analyze_batch(
            reg,
            root,
            items,
            _build_validator(config),
            config=config.analysis,
            diff_config=config.diff,
            dry_run=dry_run,
        )
    except FlowDeltaError as e:
        console.error(str(e))
        sys.exit(1)

    for report in reports:
        console.show_report(report)
        if not dry_run:
            _write_report_artifacts(root, config, report)
    failed = sum(1 for r in reports if r.has_failures)
    if failed:
        console.warning(f"{failed} changeset(s) need manual review")
    console.info(f"Workspaces are under {root / config.analysis.workspace_dir}")
    sys.exit(1 if failed else 0)


def _manifest_problem(rec) -> str:
    if not isinstance(rec, dict):
        return "expected an object"
    if "paths" not in rec and "changes" not in rec:
        return "needs 'paths' or 'changes'"
    if "paths" in rec and not isinstance(rec["paths"], list):
        return "'paths' must be a list"
    if "proposals" in rec and not isinstance(rec["proposals"], dict):
        return "'proposals' must map workflow ids to diagram text"
    return ""


@main.command("config")
@click.argument("action", type=click.Choice(["set", "get", "show"]))
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.option("--path", "-p", default=None, help="Path to the project root.")
def config_cmd(action: str, key: str | None, value: str | None, path: str | None):
    """Manage flowdelta configuration."""
    root = _get_project_root(path)
    config = _load_config(root)

    if action == "show":
        console.console.print_json(json.dumps(config.model_dump(), indent=2))
    elif action == "get":
        if not key:
            console.error("Usage: flowdelta config get <key>")
            sys.exit(1)
        data = config.model_dump()
        for part in key.split("."):
            if isinstance(data, dict) and part in data:
                data = data[part]
            else:
                console.error(f"Unknown key: {key}")
                sys.exit(1)
        console.console.print(f"{key} = {data}")
    elif action == "set":
        if not key or value is None:
            console.error("Usage: flowdelta config set <key> <value>")
            sys.exit(1)
        try:
            # Try to parse as JSON for non-string values
            try:
                parsed_value = json.loads(value)
            except json.JSONDecodeError:
                parsed_value = value

            config = set_config_value(config, key, parsed_value)
            save_config(root, config)
            console.success(f"Set {key} = {parsed_value}")
        except KeyError:
            console.error(f"Unknown config key: {key}")
            sys.exit(1)
        except ValueError as e:
            console.error(f"Invalid value for {key}: {e}")
            sys.exit(1)


if __name__ == "__main__":
    main()
