"""Load and validate the workflow registry."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from flowdelta.exceptions import DocumentError, RegistryError
from flowdelta.registry.matcher import PathMatcher, compile_pattern
from flowdelta.registry.models import MatchEvidence, Workflow, slugify

logger = logging.getLogger("flowdelta.registry")


class WorkflowRegistry:
    """The immutable catalog of workflows for one process.

    Loading is all-or-nothing: a malformed record, a duplicate id, an invalid
    pattern or (when verification is on) a diagram reference that does not
    resolve fails the whole load.
    """

    def __init__(self, workflows: list[Workflow]) -> None:
        seen: set[str] = set()
        for wf in workflows:
            if wf.id in seen:
                raise RegistryError(f"Duplicate workflow id: '{wf.id}'")
            seen.add(wf.id)
        self._workflows = tuple(workflows)
        self._by_id = {wf.id: wf for wf in workflows}
        self.matcher = PathMatcher(self._workflows)

    def __iter__(self) -> Iterator[Workflow]:
        return iter(self._workflows)

    def __len__(self) -> int:
        return len(self._workflows)

    @property
    def workflows(self) -> tuple[Workflow, ...]:
        return self._workflows

    def get(self, workflow_id: str) -> Workflow | None:
        return self._by_id.get(workflow_id)

    def match(self, paths) -> list[MatchEvidence]:
        """Match changed paths against every workflow (see PathMatcher.match)."""
        return self.matcher.match(paths)

    @classmethod
    def from_records(cls, records: list[dict[str, Any]]) -> WorkflowRegistry:
        """Build a registry from raw workflow records."""
        workflows = [_workflow_from_record(rec, i) for i, rec in enumerate(records)]
        return cls(workflows)

    @classmethod
    def load(
        cls,
        path: str | Path,
        root: str | Path | None = None,
        verify_docs: bool = True,
    ) -> WorkflowRegistry:
        """Load a registry file.

        Args:
            path: Path to the registry JSON (a list, or ``{"workflows": [...]}``).
            root: Directory that ``doc`` paths are relative to. Defaults to the
                registry's grandparent when it lives in ``.exp/``, else its parent.
            verify_docs: Check that every diagram reference resolves.

        Raises:
            RegistryError: The file is missing or malformed.
            PatternError: A workflow declares an unsupported pattern.
        """
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise RegistryError(f"Registry not found: {path}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryError(f"Cannot read registry {path}: {e}") from e

        if isinstance(data, dict):
            data = data.get("workflows")
        if not isinstance(data, list):
            raise RegistryError(
                f"Registry {path} must be a list of workflows or an object "
                "with a 'workflows' list"
            )

        registry = cls.from_records(data)
        logger.info(f"Loaded {len(registry)} workflow(s) from {path}")

        if verify_docs:
            if root is None:
                root = path.parent.parent if path.parent.name == ".exp" else path.parent
            registry.verify_documents(Path(root))
        return registry

    def verify_documents(self, root: Path) -> None:
        """Ensure every diagram reference resolves to a block in its document."""
        from flowdelta.docs.store import DesignDocStore

        store = DesignDocStore(root)
        for wf in self._workflows:
            try:
                for ref in wf.diagram_refs:
                    store.locate(wf.doc_path, ref)
            except DocumentError as e:
                raise RegistryError(
                    f"Workflow '{wf.id}' references a missing diagram: {e}"
                ) from e


def _workflow_from_record(record: Any, index: int) -> Workflow:
    if not isinstance(record, dict):
        raise RegistryError(f"Workflow record #{index} is not an object")

    name = record.get("name")
    if not isinstance(name, str) or not name.strip():
        raise RegistryError(f"Workflow record #{index} has no name")

    doc = record.get("doc") or record.get("doc_path")
    if not isinstance(doc, str) or not doc.strip():
        raise RegistryError(f"Workflow '{name}' has no 'doc' path")

    patterns = record.get("relevant_files", record.get("relevant_file_patterns", []))
    if not isinstance(patterns, list):
        raise RegistryError(f"Workflow '{name}': 'relevant_files' must be a list")

    refs = record.get("diagrams", record.get("diagram_refs")) or ["0"]
    if not isinstance(refs, list):
        raise RegistryError(f"Workflow '{name}': 'diagrams' must be a list")

    workflow_id = record.get("id") or slugify(name)
    for pattern in patterns:
        compile_pattern(pattern, workflow_id)

    try:
        return Workflow(
            id=str(workflow_id),
            name=name,
            description=str(record.get("description", "")),
            input=_as_text(record.get("input", "")),
            output=_as_text(record.get("output", "")),
            entry_point=_as_text(record.get("entry_point", "")),
            relevant_file_patterns=tuple(patterns),
            diagram_refs=tuple(str(r) for r in refs),
            doc_path=doc,
        )
    except PydanticValidationError as e:
        raise RegistryError(f"Workflow '{name}' is malformed: {e}") from e


def _as_text(value: Any) -> str:
    # Registries written by hand sometimes use lists for input/output
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)
