"""
Hybrid memory search: semantic retrieval with a keyword fallback, quality
filtering, note filters and deterministic ranking.
"""

import dataclasses
import re
from typing import Dict, List, Optional

from ..models.core import KEYWORD, SEMANTIC, RetrievalResult, SearchOptions
from ..utils.config import SearchConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

PHRASE_BONUS = 1.0
KEYWORD_BONUS = 0.4
WORD_BOUNDARY_BONUS = 0.3
PROPER_NOUN_BONUS = 0.2
MIN_COVERAGE = 0.5
KEYWORD_STRIP = '.,;:!?"\'()[]{}'


def query_keywords(query: str) -> List[str]:
    keywords = []
    for word in query.split():
        word = word.strip(KEYWORD_STRIP)
        if len(word) >= 2:
            keywords.append(word)
    return keywords


def keyword_score(query: str, keywords: List[str], text: str) -> Optional[tuple]:
    """Score ``text`` against a query by substring heuristics.

    Returns:
        (score, matched keyword count), or None when no keyword matched
    """
    text_lower = text.lower()
    phrase_match = bool(query.strip()) and query.strip().lower() in text_lower
    score = PHRASE_BONUS if phrase_match else 0.0
    matched = 0

    for keyword in keywords:
        lowered = keyword.lower()
        if lowered not in text_lower:
            continue
        matched += 1
        score += KEYWORD_BONUS
        if re.search(r'\b' + re.escape(lowered) + r'\b', text_lower):
            score += WORD_BOUNDARY_BONUS
        if keyword[0].isupper() and len(keyword) > 2:
            score += PROPER_NOUN_BONUS

    if matched == 0:
        return None

    return score * max(MIN_COVERAGE, matched / len(keywords)), matched


def merge_results(semantic: List[RetrievalResult], keyword: List[RetrievalResult]) -> List[RetrievalResult]:
    """Union by id. A semantic entry wins over a keyword entry for the same id
    but picks up its keyword match count."""
    merged: Dict[str, RetrievalResult] = {r.id: r for r in semantic}
    for result in keyword:
        existing = merged.get(result.id)
        if existing is None:
            merged[result.id] = dataclasses.replace(result, search_type=KEYWORD)
        elif result.keyword_matches > existing.keyword_matches:
            merged[result.id] = dataclasses.replace(existing, keyword_matches=result.keyword_matches)
    return list(merged.values())


def quality_filter(results: List[RetrievalResult], good_score: float, floor: float) -> List[RetrievalResult]:
    """Keep good hits and keyword hits; keep mediocre hits only when nothing is good."""
    any_good = any(r.score >= good_score for r in results)
    return [
        r for r in results
        if r.score >= good_score or r.keyword_matches > 0 or (r.score >= floor and not any_good)
    ]


def matches_note_filters(result: RetrievalResult, options: SearchOptions) -> bool:
    """Apply tag, importance and source filters to notes; other memories pass unless notes only are wanted."""
    if not result.is_conscious:
        return not options.conscious_only

    metadata = result.metadata
    if options.tags:
        wanted = {tag.strip().lower() for tag in options.tags}
        if not wanted & {tag.strip().lower() for tag in metadata.tags}:
            return False
    if options.importance_min is not None and metadata.importance < options.importance_min:
        return False
    if options.importance_max is not None and metadata.importance > options.importance_max:
        return False
    if options.source and metadata.source != options.source:
        return False
    return True


def rank_results(results: List[RetrievalResult], tie_break_window: float) -> List[RetrievalResult]:
    """Sort by descending score, preferring semantic hits over keyword hits scoring within the window."""
    return sorted(results,
                  key=lambda r: (r.score + (tie_break_window if r.search_type == SEMANTIC else 0.0), r.score),
                  reverse=True)


def _message_type_matches(result: RetrievalResult, message_type: Optional[str]) -> bool:
    return not message_type or message_type == 'both' or result.metadata.message_type == message_type


class HybridRetriever:
    """Search over the vector store that never returns an error to its caller."""

    def __init__(self, vector_store, config: Optional[SearchConfig] = None):
        self.vector_store = vector_store
        self.config = config or SearchConfig()

    def search(self, query: str, options: Optional[SearchOptions] = None) -> List[RetrievalResult]:
        """
        Search memories.

        An empty query lists memories newest first, still honouring the filters.

        Args:
            query: Natural language query
            options: Limits and filters

        Returns:
            Ranked results, empty on any failure
        """
        options = options or SearchOptions()
        try:
            if not query or not query.strip():
                return self.list_all(options)
            return self._search(query, options)
        except Exception as e:
            logger.error(f'Memory search failed for query {query[:50]!r}: {e}')
            return []

    def list_all(self, options: SearchOptions) -> List[RetrievalResult]:
        limit = options.limit or self.config.list_all_limit
        scan = self.vector_store.list_all(limit=max(limit, self.config.keyword_scan_limit), session_id=options.session_id)
        results = [r for r in scan if _message_type_matches(r, options.message_type) and matches_note_filters(r, options)]
        return results[:limit]

    def _search(self, query: str, options: SearchOptions) -> List[RetrievalResult]:
        limit = options.limit or self.config.default_limit
        floor = self.config.semantic_floor if options.min_score is None else options.min_score

        semantic = self.vector_store.retrieve(query, dataclasses.replace(options, limit=limit, min_score=floor))
        good = [r for r in semantic if r.score >= self.config.good_score]

        keyword: List[RetrievalResult] = []
        if not good or len(semantic) < self.config.min_semantic_results:
            keyword = self.keyword_search(query, options, limit)
            logger.debug(f'Keyword fallback found {len(keyword)} matches ({len(good)} good semantic hits)')

        merged = merge_results(semantic, keyword)
        filtered = quality_filter(merged, self.config.good_score, self.config.semantic_floor)
        filtered = [r for r in filtered if matches_note_filters(r, options)]
        ranked = rank_results(filtered, self.config.tie_break_window)[:limit]

        logger.debug(f'Hybrid search returned {len(ranked)} results ({len(semantic)} semantic, {len(keyword)} keyword)')
        return ranked

    def keyword_search(self, query: str, options: SearchOptions, limit: int) -> List[RetrievalResult]:
        """Score up to ``keyword_scan_limit`` stored memories by keyword heuristics.

        Returns:
            Keyword hits, empty if the query has no usable keywords or the scan fails
        """
        keywords = query_keywords(query)
        if not keywords:
            return []

        try:
            scan = self.vector_store.list_all(limit=self.config.keyword_scan_limit, session_id=options.session_id)
        except Exception as e:
            logger.warning(f'Keyword scan failed, keeping semantic results only: {e}')
            return []

        results = []
        for item in scan:
            if not _message_type_matches(item, options.message_type):
                continue
            scored = keyword_score(query, keywords, item.text)
            if scored is None:
                continue
            score, matched = scored
            results.append(dataclasses.replace(item, score=score, search_type=KEYWORD, keyword_matches=matched))

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]
