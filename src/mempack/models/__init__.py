"""Data models for mempack."""

from mempack.models.document import (
    ALL_SOURCES,
    SOURCE_NOTES,
    SOURCE_SESSIONS,
    Chunk,
    Document,
    SessionMessage,
    SessionRecord,
    StoredFile,
    Tenant,
    hash_text,
)
from mempack.models.search import (
    MODE_AUTO,
    MODE_HYBRID,
    MODE_KEYWORD,
    MODE_LIST,
    MODE_SEMANTIC,
    SEARCH_MODES,
    HybridKeywordResult,
    HybridVectorResult,
    SearchOptions,
    SearchResponse,
    SearchResult,
    normalize_mode,
)

__all__ = [
    "ALL_SOURCES",
    "MODE_AUTO",
    "MODE_HYBRID",
    "MODE_KEYWORD",
    "MODE_LIST",
    "MODE_SEMANTIC",
    "SEARCH_MODES",
    "SOURCE_NOTES",
    "SOURCE_SESSIONS",
    "Chunk",
    "Document",
    "HybridKeywordResult",
    "HybridVectorResult",
    "SearchOptions",
    "SearchResponse",
    "SearchResult",
    "SessionMessage",
    "SessionRecord",
    "StoredFile",
    "Tenant",
    "hash_text",
    "normalize_mode",
]
