"""Scoring and fusion for hybrid (vector + lexical) search.

Everything here is pure: the manager gathers candidates from the two
engines and hands them to these functions to be normalized, merged,
filtered and trimmed.
"""

import math
import re
from typing import Iterable, Optional

from mempack.models import HybridKeywordResult, HybridVectorResult, SearchResult

MAX_SNIPPET_CHARS = 700
MAX_CANDIDATES = 200

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


def build_fts_query(raw: str) -> Optional[str]:
    """Turn free text into an FTS5 query that ANDs every word.

    Returns None when the text has no searchable tokens.
    """
    tokens = _TOKEN_RE.findall(raw or "")
    if not tokens:
        return None
    return " AND ".join(f'"{token}"' for token in tokens)


def keyword_tokens(raw: str) -> list[str]:
    """Distinct lower-cased word tokens, in order of first appearance."""
    return list(dict.fromkeys(token.lower() for token in _TOKEN_RE.findall(raw or "")))


def bm25_rank_to_score(rank: float) -> float:
    """Map a lexical rank (0 is best, unbounded) into (0, 1].

    ``r <= 0`` scores 1, rank 1 scores 0.5, and larger ranks decay
    towards 0. Non-finite ranks score 0.001.
    """
    if not math.isfinite(rank):
        return 1 / 1000
    if rank <= 0:
        return 1.0
    return 1 / (1 + rank)


def keyword_scores(raw_ranks: Iterable[float]) -> list[float]:
    """Score FTS5 bm25() values, which are negative and lower-is-better.

    Ranks are taken relative to the best candidate so the top lexical hit
    always scores 1 and the others decay with their distance from it.
    """
    ranks = list(raw_ranks)
    if not ranks:
        return []
    finite = [r for r in ranks if math.isfinite(r)]
    best = min(finite) if finite else 0.0
    return [bm25_rank_to_score(r - best) for r in ranks]


def truncate_snippet(text: str, limit: int = MAX_SNIPPET_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit]


def merge_hybrid_results(
    vector: list[HybridVectorResult],
    keyword: list[HybridKeywordResult],
    vector_weight: float,
    text_weight: float,
) -> list[SearchResult]:
    """Fuse the two candidate sets into one ranking.

    Candidates are matched on (path, start_line, end_line). A match in
    both sets scores ``vector_weight * v + text_weight * t`` and shows the
    lexical snippet when it has one; a match in one set only gets that
    set's weighted term. Results are sorted by fused score; ties keep
    first-seen order, vector candidates first.
    """
    merged: dict[tuple[str, int, int], SearchResult] = {}

    for item in vector:
        key = (item.path, item.start_line, item.end_line)
        if key in merged:
            continue
        merged[key] = SearchResult(
            path=item.path,
            start_line=item.start_line,
            end_line=item.end_line,
            score=0.0,
            snippet=item.snippet,
            source=item.source,
            vector_score=item.vector_score,
            text_score=0.0,
        )

    for item in keyword:
        key = (item.path, item.start_line, item.end_line)
        existing = merged.get(key)
        if existing is not None:
            if existing.text_score:
                continue
            existing.text_score = item.text_score
            if item.snippet:
                existing.snippet = item.snippet
            continue
        merged[key] = SearchResult(
            path=item.path,
            start_line=item.start_line,
            end_line=item.end_line,
            score=0.0,
            snippet=item.snippet,
            source=item.source,
            vector_score=0.0,
            text_score=item.text_score,
        )

    results = list(merged.values())
    for result in results:
        result.score = vector_weight * (result.vector_score or 0.0) + text_weight * (result.text_score or 0.0)
    # sorted() is stable, which gives the first-seen tie break
    return sorted(results, key=lambda r: r.score, reverse=True)


def vector_only_results(vector: list[HybridVectorResult]) -> list[SearchResult]:
    return [
        SearchResult(
            path=item.path,
            start_line=item.start_line,
            end_line=item.end_line,
            score=item.vector_score,
            snippet=item.snippet,
            source=item.source,
            vector_score=item.vector_score,
        )
        for item in sorted(vector, key=lambda r: r.vector_score, reverse=True)
    ]


def keyword_only_results(keyword: list[HybridKeywordResult]) -> list[SearchResult]:
    return [
        SearchResult(
            path=item.path,
            start_line=item.start_line,
            end_line=item.end_line,
            score=item.text_score,
            snippet=item.snippet,
            source=item.source,
            text_score=item.text_score,
        )
        for item in sorted(keyword, key=lambda r: r.text_score, reverse=True)
    ]


def filter_and_limit(results: list[SearchResult], min_score: float, max_results: int) -> list[SearchResult]:
    """Drop results under ``min_score``, then keep the first ``max_results``."""
    kept = [r for r in results if r.score >= min_score]
    return kept[:max(0, max_results)]


def apply_injection_budget(results: list[SearchResult], max_chars: int) -> list[SearchResult]:
    """Trim results so their snippets fit in ``max_chars`` (0 = no cap).

    The first result is always kept, truncated to fit.
    """
    if max_chars <= 0:
        return results
    kept: list[SearchResult] = []
    used = 0
    for result in results:
        size = len(result.snippet)
        if used + size > max_chars:
            if not kept:
                result.snippet = result.snippet[:max_chars]
                kept.append(result)
            break
        kept.append(result)
        used += size
    return kept
