"""Read and write Mermaid diagram blocks inside Markdown design documents."""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from pathlib import Path

from pydantic import BaseModel

from flowdelta.exceptions import DocumentError, DocumentIOError

logger = logging.getLogger("flowdelta.docs")

FENCE_RE = re.compile(r"^(?P<indent>[ ]{0,3})(?P<fence>`{3,}|~{3,})\s*(?P<info>.*)$")
ANCHOR_RE = re.compile(r"^\s*<!--\s*diagram:\s*(?P<name>[\w.-]+)\s*-->\s*$")
INFO_ID_RE = re.compile(r"\bid=(?P<name>[\w.-]+)")


class DiagramBlock(BaseModel):
    """One fenced ```mermaid block of a document."""

    index: int  # ordinal among the document's mermaid blocks
    anchor: str | None = None
    start_line: int  # line of the opening fence (0-based)
    end_line: int  # line of the closing fence
    indent: str = ""
    text: str


class DesignDocStore:
    """Locates, loads and rewrites diagram blocks in documents under `root`.

    Blocks are addressed by ordinal ("0", "1", ...) or by anchor name, given
    either as a ``<!-- diagram: name -->`` comment on the line before the
    fence or as ``id=name`` in the fence info string.

    Writes to one path are serialized process-wide; the lock is held across
    the whole read-modify-write.
    """

    _locks: dict[Path, threading.Lock] = {}
    _locks_guard = threading.Lock()

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def resolve(self, doc_path: str | Path) -> Path:
        path = Path(doc_path)
        return path if path.is_absolute() else self.root / path

    def blocks(self, doc_path: str | Path) -> list[DiagramBlock]:
        """All mermaid blocks of a document, in order."""
        return _find_blocks(self._read(self.resolve(doc_path)), str(doc_path))

    def locate(self, doc_path: str | Path, ref: str) -> DiagramBlock:
        """Find the block addressed by `ref`.

        Raises:
            DocumentError: No such block.
            DocumentIOError: The document cannot be read.
        """
        return _select(self.blocks(doc_path), ref, str(doc_path))

    def load(self, doc_path: str | Path, ref: str) -> str:
        """Return the diagram text of the block addressed by `ref`."""
        return self.locate(doc_path, ref).text

    def persist(self, doc_path: str | Path, ref: str, new_text: str) -> bool:
        """Replace the block's diagram text with `new_text`.

        The write is atomic (temp file + rename) and skipped when the text is
        unchanged.

        Returns:
            True if the document was written.
        """
        path = self.resolve(doc_path)
        with self._lock_for(path):
            content = self._read(path)
            block = _select(_find_blocks(content, str(doc_path)), ref, str(doc_path))
            if block.text.rstrip("\n") == new_text.rstrip("\n"):
                logger.debug(f"{doc_path} [{ref}] is already up to date")
                return False

            lines = content.split("\n")
            body = [
                (block.indent + line) if line else line
                for line in new_text.rstrip("\n").split("\n")
            ]
            lines[block.start_line + 1 : block.end_line] = body
            self._write(path, "\n".join(lines))
            logger.info(f"Updated diagram [{ref}] in {doc_path}")
            return True

    @classmethod
    def _lock_for(cls, path: Path) -> threading.Lock:
        key = path.resolve()
        with cls._locks_guard:
            lock = cls._locks.get(key)
            if lock is None:
                lock = cls._locks[key] = threading.Lock()
            return lock

    @staticmethod
    def _read(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise DocumentIOError(f"Cannot read design document {path}: {e}") from e

    @staticmethod
    def _write(path: Path, content: str) -> None:
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise DocumentIOError(f"Cannot write design document {path}: {e}") from e


def _find_blocks(content: str, name: str) -> list[DiagramBlock]:
    lines = content.split("\n")
    blocks: list[DiagramBlock] = []
    i = 0
    while i < len(lines):
        m = FENCE_RE.match(lines[i])
        if not m:
            i += 1
            continue
        fence, info, indent = m.group("fence"), m.group("info").strip(), m.group("indent")
        end = i + 1
        while end < len(lines):
            stripped = lines[end].strip()
            if stripped.startswith(fence[0] * len(fence)) and not stripped.strip(fence[0]):
                break
            end += 1
        if end >= len(lines):
            raise DocumentError(f"{name}: code fence opened on line {i + 1} is never closed")

        if info.split(None, 1)[0:1] == ["mermaid"]:
            body = [_dedent(line, indent) for line in lines[i + 1 : end]]
            blocks.append(
                DiagramBlock(
                    index=len(blocks),
                    anchor=_anchor(lines, i, info),
                    start_line=i,
                    end_line=end,
                    indent=indent,
                    text="\n".join(body) + "\n" if body else "",
                )
            )
        i = end + 1
    return blocks


def _anchor(lines: list[str], fence_line: int, info: str) -> str | None:
    m = INFO_ID_RE.search(info)
    if m:
        return m.group("name")
    j = fence_line - 1
    while j >= 0 and not lines[j].strip():
        j -= 1
    if j >= 0:
        m = ANCHOR_RE.match(lines[j])
        if m:
            return m.group("name")
    return None


def _dedent(line: str, indent: str) -> str:
    return line[len(indent) :] if indent and line.startswith(indent) else line


def _select(blocks: list[DiagramBlock], ref: str, name: str) -> DiagramBlock:
    ref = str(ref).strip()
    for block in blocks:
        if block.anchor == ref:
            return block
    if ref.isdigit():
        index = int(ref)
        if index < len(blocks):
            return blocks[index]
        raise DocumentError(
            f"{name} has {len(blocks)} mermaid block(s); block {index} does not exist"
        )
    raise DocumentError(f"{name} has no mermaid block named '{ref}'")
