"""Token-bounded, line-preserving chunking for markdown and transcripts."""

from mempack.models import Chunk, hash_text


class MarkdownChunker:
    """Split text into overlapping line windows of at most ``tokens`` tokens.

    Tokens are approximated as 4 characters. Lines are never merged
    mid-line; a line longer than the window is cut into window-sized
    segments that keep the line number of the original line. After each
    flush the trailing lines of the previous chunk are carried over until
    they cover ``overlap`` tokens, so neighbouring chunks share context.

    The output depends only on the text and the two settings, which is what
    keeps embedding cache hits stable across re-indexes.
    """

    DEFAULT_TOKENS = 400
    DEFAULT_OVERLAP = 80
    CHARS_PER_TOKEN = 4
    MIN_CHUNK_CHARS = 32

    def __init__(self, tokens: int = DEFAULT_TOKENS, overlap: int = DEFAULT_OVERLAP):
        if tokens < 1:
            tokens = self.DEFAULT_TOKENS
        self.tokens = tokens
        self.overlap = max(0, min(overlap, tokens - 1))

    @property
    def max_chars(self) -> int:
        return max(self.MIN_CHUNK_CHARS, self.tokens * self.CHARS_PER_TOKEN)

    @property
    def overlap_chars(self) -> int:
        return self.overlap * self.CHARS_PER_TOKEN

    def chunk(self, text: str, file_path: str) -> list[Chunk]:
        """Split text into chunks with line provenance.

        Args:
            text: The text content to chunk
            file_path: Path to the source file (for metadata)

        Returns:
            List of Chunk objects, start_line/end_line 1-based inclusive
        """
        if not text or not text.strip():
            return []

        max_chars = self.max_chars
        windows: list[list[tuple[str, int]]] = []
        current: list[tuple[str, int]] = []  # (segment, line_no)
        current_chars = 0

        for line_no, line in enumerate(text.split("\n"), start=1):
            segments = [line[i:i + max_chars] for i in range(0, len(line), max_chars)] or [""]
            for segment in segments:
                size = len(segment) + 1
                if current and current_chars + size > max_chars:
                    windows.append(current)
                    current = self._carry_overlap(current)
                    current_chars = sum(len(s) + 1 for s, _ in current)
                    # The carried tail must still leave room for this segment
                    while current and current_chars + size > max_chars:
                        current_chars -= len(current[0][0]) + 1
                        current = current[1:]
                current.append((segment, line_no))
                current_chars += size

        if current:
            windows.append(current)

        chunks = []
        for window in windows:
            chunk_text = "\n".join(segment for segment, _ in window)
            # Skip empty chunks
            if not chunk_text.strip():
                continue
            chunks.append(
                Chunk(
                    text=chunk_text,
                    file_path=file_path,
                    chunk_index=len(chunks),
                    start_line=window[0][1],
                    end_line=window[-1][1],
                    hash=hash_text(chunk_text),
                )
            )
        return chunks

    def _carry_overlap(self, window: list[tuple[str, int]]) -> list[tuple[str, int]]:
        """Trailing entries of ``window`` covering at least ``overlap_chars``."""
        if self.overlap_chars <= 0:
            return []
        kept: list[tuple[str, int]] = []
        acc = 0
        for entry in reversed(window):
            acc += len(entry[0]) + 1
            kept.insert(0, entry)
            if acc >= self.overlap_chars:
                break
        return kept
