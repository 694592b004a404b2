"""Tests for the markdown chunker."""

from mempack.chunkers import MarkdownChunker
from mempack.protocols import ChunkingStrategy


def _note(lines: int, width: int = 30) -> str:
    return "\n".join(f"line {i:04d} " + "x" * (width - 10) for i in range(1, lines + 1))


def test_satisfies_protocol():
    assert isinstance(MarkdownChunker(), ChunkingStrategy)


def test_empty_text_has_no_chunks():
    chunker = MarkdownChunker()
    assert chunker.chunk("", "memory/a.md") == []
    assert chunker.chunk("  \n\n ", "memory/a.md") == []


def test_small_text_is_one_chunk():
    chunks = MarkdownChunker().chunk("# Title\n\nHello world", "memory/a.md")
    assert len(chunks) == 1
    assert chunks[0].start_line == 1
    assert chunks[0].end_line == 3
    assert chunks[0].file_path == "memory/a.md"
    assert chunks[0].chunk_index == 0


def test_chunks_respect_size_and_cover_every_line():
    chunker = MarkdownChunker(tokens=50, overlap=10)
    text = _note(60)
    chunks = chunker.chunk(text, "memory/a.md")

    assert len(chunks) > 1
    assert all(len(c.text) <= chunker.max_chars for c in chunks)
    assert chunks[0].start_line == 1
    assert chunks[-1].end_line == 60
    covered = set()
    for c in chunks:
        covered.update(range(c.start_line, c.end_line + 1))
    assert covered == set(range(1, 61))
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))


def test_neighbouring_chunks_overlap():
    chunks = MarkdownChunker(tokens=50, overlap=10).chunk(_note(40), "memory/a.md")
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start_line <= prev.end_line


def test_no_overlap():
    chunks = MarkdownChunker(tokens=50, overlap=0).chunk(_note(40), "memory/a.md")
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start_line == prev.end_line + 1


def test_long_line_is_split_with_same_line_number():
    chunker = MarkdownChunker(tokens=10, overlap=0)
    chunks = chunker.chunk("y" * 100, "memory/a.md")
    assert len(chunks) > 1
    assert all(c.start_line == 1 and c.end_line == 1 for c in chunks)
    assert "".join(c.text for c in chunks) == "y" * 100


def test_deterministic():
    chunker = MarkdownChunker(tokens=40, overlap=8)
    text = _note(50)
    first = chunker.chunk(text, "memory/a.md")
    second = MarkdownChunker(tokens=40, overlap=8).chunk(text, "memory/a.md")
    assert [(c.start_line, c.end_line, c.hash) for c in first] == [
        (c.start_line, c.end_line, c.hash) for c in second
    ]


def test_overlap_clamped_below_tokens():
    chunker = MarkdownChunker(tokens=10, overlap=50)
    assert chunker.overlap == 9
    assert MarkdownChunker(tokens=0).tokens == MarkdownChunker.DEFAULT_TOKENS
