"""Hybrid search scoring."""

from mempack.search.hybrid import (
    MAX_CANDIDATES,
    MAX_SNIPPET_CHARS,
    apply_injection_budget,
    bm25_rank_to_score,
    build_fts_query,
    filter_and_limit,
    keyword_only_results,
    keyword_scores,
    keyword_tokens,
    merge_hybrid_results,
    truncate_snippet,
    vector_only_results,
)

__all__ = [
    "MAX_CANDIDATES",
    "MAX_SNIPPET_CHARS",
    "apply_injection_budget",
    "bm25_rank_to_score",
    "build_fts_query",
    "filter_and_limit",
    "keyword_only_results",
    "keyword_scores",
    "keyword_tokens",
    "merge_hybrid_results",
    "truncate_snippet",
    "vector_only_results",
]
