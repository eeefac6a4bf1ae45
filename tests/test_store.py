"""Tests for reading and writing diagram blocks in design documents."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from flowdelta.docs import DesignDocStore
from flowdelta.exceptions import DocumentError, DocumentIOError

from conftest import LINT_FLOW, UI_SEQUENCE

MULTI = """\
# Design

```python
print("not a diagram")
```

```mermaid
flowchart TD
    A --> B
```

Some text.

<!-- diagram: run -->

```mermaid
sequenceDiagram
    A->>B: hi
```

```mermaid id=deploy
flowchart LR
    X --> Y
```
"""


@pytest.fixture
def store(tmp_path: Path) -> DesignDocStore:
    (tmp_path / "design.md").write_text(MULTI)
    return DesignDocStore(tmp_path)


class TestLocate:
    def test_blocks_skip_other_languages(self, store: DesignDocStore):
        blocks = store.blocks("design.md")
        assert [b.index for b in blocks] == [0, 1, 2]
        assert [b.anchor for b in blocks] == [None, "run", "deploy"]

    def test_load_by_ordinal(self, store: DesignDocStore):
        assert store.load("design.md", "0") == "flowchart TD\n    A --> B\n"

    def test_load_by_anchor(self, store: DesignDocStore):
        assert store.load("design.md", "run").startswith("sequenceDiagram")
        assert store.load("design.md", "deploy").startswith("flowchart LR")

    def test_missing_block(self, store: DesignDocStore):
        with pytest.raises(DocumentError, match="block 5"):
            store.locate("design.md", "5")
        with pytest.raises(DocumentError, match="nope"):
            store.locate("design.md", "nope")

    def test_missing_document(self, store: DesignDocStore):
        with pytest.raises(DocumentIOError):
            store.load("absent.md", "0")

    def test_unclosed_fence(self, tmp_path: Path):
        (tmp_path / "broken.md").write_text("# Doc\n\n```mermaid\nflowchart TD\n    A\n")
        with pytest.raises(DocumentError, match="never closed"):
            DesignDocStore(tmp_path).blocks("broken.md")

    def test_indented_block(self, tmp_path: Path):
        (tmp_path / "list.md").write_text("- step\n\n  ```mermaid\n  flowchart TD\n      A --> B\n  ```\n")
        store = DesignDocStore(tmp_path)
        assert store.load("list.md", "0") == "flowchart TD\n    A --> B\n"


class TestPersist:
    def test_replaces_only_the_block(self, store: DesignDocStore, tmp_path: Path):
        assert store.persist("design.md", "run", UI_SEQUENCE)
        content = (tmp_path / "design.md").read_text()
        assert UI_SEQUENCE in content
        assert "A->>B: hi" not in content
        # Everything around the block is untouched
        assert content.startswith("# Design\n\n```python\n")
        assert "<!-- diagram: run -->" in content
        assert content.endswith("    X --> Y\n```\n")
        assert store.load("design.md", "0") == "flowchart TD\n    A --> B\n"

    def test_skips_identical_text(self, store: DesignDocStore, tmp_path: Path):
        before = (tmp_path / "design.md").stat().st_mtime_ns
        assert not store.persist("design.md", "0", "flowchart TD\n    A --> B")
        assert (tmp_path / "design.md").read_text() == MULTI
        assert (tmp_path / "design.md").stat().st_mtime_ns == before

    def test_second_persist_is_noop(self, store: DesignDocStore):
        assert store.persist("design.md", "0", LINT_FLOW)
        assert not store.persist("design.md", "0", LINT_FLOW)

    def test_keeps_indentation(self, tmp_path: Path):
        (tmp_path / "list.md").write_text("- step\n\n  ```mermaid\n  flowchart TD\n      A --> B\n  ```\n")
        store = DesignDocStore(tmp_path)
        store.persist("list.md", "0", LINT_FLOW)
        assert (tmp_path / "list.md").read_text() == (
            "- step\n\n  ```mermaid\n  flowchart TD\n      A[Parse] --> B[Check]\n  ```\n"
        )

    def test_no_temp_files_left(self, store: DesignDocStore, tmp_path: Path):
        store.persist("design.md", "0", LINT_FLOW)
        assert sorted(p.name for p in tmp_path.iterdir()) == ["design.md"]

    def test_concurrent_persists_to_one_document(self, tmp_path: Path):
        blocks = "\n".join(f"```mermaid\nflowchart TD\n    N{i}\n```\n" for i in range(8))
        (tmp_path / "many.md").write_text(blocks)
        store = DesignDocStore(tmp_path)

        def update(i: int) -> None:
            store.persist("many.md", str(i), f"flowchart TD\n    N{i} --> M{i}\n")

        threads = [threading.Thread(target=update, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for i in range(8):
            assert store.load("many.md", str(i)) == f"flowchart TD\n    N{i} --> M{i}\n"
