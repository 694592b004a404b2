"""Search request and result models."""

from dataclasses import dataclass, field
from typing import Optional

MODE_AUTO = "auto"
MODE_SEMANTIC = "semantic"
MODE_KEYWORD = "keyword"
MODE_HYBRID = "hybrid"
MODE_LIST = "list"
SEARCH_MODES = (MODE_AUTO, MODE_SEMANTIC, MODE_KEYWORD, MODE_HYBRID, MODE_LIST)


def normalize_mode(raw: Optional[str]) -> str:
    """Lower-case a search mode; unknown or empty modes mean ``auto``."""
    mode = (raw or "").strip().lower()
    return mode if mode in SEARCH_MODES else MODE_AUTO


@dataclass
class SearchOptions:
    """Per-call overrides for a search.

    ``mode`` picks the engines: ``semantic`` is vector only, ``keyword`` is
    lexical only, ``auto`` and ``hybrid`` fuse both, and ``list`` returns
    the most recently updated files without ranking.
    """

    max_results: Optional[int] = None
    min_score: Optional[float] = None
    session_key: str = ""
    sources: tuple[str, ...] = ()
    path_prefix: str = ""
    mode: str = MODE_AUTO


@dataclass
class HybridVectorResult:
    """A candidate from the vector pass."""

    id: str
    path: str
    start_line: int
    end_line: int
    source: str
    snippet: str
    vector_score: float


@dataclass
class HybridKeywordResult:
    """A candidate from the lexical pass."""

    id: str
    path: str
    start_line: int
    end_line: int
    source: str
    snippet: str
    text_score: float


@dataclass
class SearchResult:
    """A ranked snippet returned to the caller."""

    path: str
    start_line: int
    end_line: int
    score: float
    snippet: str
    source: str
    vector_score: Optional[float] = None
    text_score: Optional[float] = None

    @property
    def identity(self) -> tuple[str, int, int]:
        return (self.path, self.start_line, self.end_line)


@dataclass
class SearchResponse:
    """Results of a search plus which engines contributed.

    ``keyword_scan`` is set when the lexical pass scanned chunk text
    because the full-text index is unavailable.

    ``unavailable_reason`` is set only when neither engine could run, so an
    empty list with no reason really means "no matches".
    """

    results: list[SearchResult] = field(default_factory=list)
    vector_used: bool = False
    keyword_used: bool = False
    keyword_scan: bool = False
    unavailable_reason: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)
