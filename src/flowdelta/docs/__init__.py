"""Design documents: fenced Mermaid blocks in Markdown files."""

from flowdelta.docs.store import DesignDocStore, DiagramBlock

__all__ = ["DesignDocStore", "DiagramBlock"]
