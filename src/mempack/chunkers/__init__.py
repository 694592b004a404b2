"""Chunking strategies."""

from mempack.chunkers.markdown_chunker import MarkdownChunker

__all__ = ["MarkdownChunker"]
