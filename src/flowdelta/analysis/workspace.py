"""Workspaces and cancellation for analysis runs."""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
import threading
from collections.abc import Iterable
from pathlib import Path

from flowdelta.docs.store import DesignDocStore
from flowdelta.exceptions import AnalysisCancelled, DocumentIOError

logger = logging.getLogger("flowdelta.analysis")


class CancelToken:
    """Cooperative cancellation flag shared by the units of one run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AnalysisCancelled("analysis was cancelled")


class Workspace:
    """The root under which design documents are resolved and written.

    Every component that touches documents receives the workspace explicitly;
    nothing falls back to the process working directory.
    """

    def __init__(self, root: str | Path, changeset_id: str = "", isolated: bool = False) -> None:
        self.root = Path(root)
        self.changeset_id = changeset_id
        self.isolated = isolated
        self.store = DesignDocStore(self.root)

    def __repr__(self) -> str:
        return f"Workspace(root={str(self.root)!r}, isolated={self.isolated})"

    @classmethod
    def isolated_copy(
        cls,
        project_root: str | Path,
        workspace_dir: str | Path,
        changeset_id: str,
        doc_paths: Iterable[str],
    ) -> Workspace:
        """Copy the given documents into ``<workspace_dir>/<changeset_id>/``.

        An existing workspace for the same changeset is replaced, so every run
        starts from the project's current documents.

        Raises:
            DocumentIOError: A document cannot be copied.
        """
        project_root = Path(project_root)
        base = Path(workspace_dir)
        if not base.is_absolute():
            base = project_root / base
        root = base / safe_name(changeset_id)
        try:
            if root.exists():
                shutil.rmtree(root)
            root.mkdir(parents=True)
            for doc in sorted(set(doc_paths)):
                source = project_root / doc
                target = root / doc
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
        except OSError as e:
            raise DocumentIOError(f"Cannot prepare workspace {root}: {e}") from e
        logger.info(f"Prepared workspace {root}")
        return cls(root, changeset_id=changeset_id, isolated=True)


def safe_name(changeset_id: str) -> str:
    """A filesystem-safe directory/file name for a changeset id.

    Ids that are already safe are kept as they are. Any other id gets a short
    hash of the raw id appended, so `a/b` and `a-b` never share a directory.
    """
    name = re.sub(r"[^\w.-]+", "-", changeset_id).strip("-.")
    if name and name == changeset_id:
        return name
    digest = hashlib.sha256(changeset_id.encode("utf-8")).hexdigest()[:8]
    return f"{name or 'changeset'}-{digest}"
