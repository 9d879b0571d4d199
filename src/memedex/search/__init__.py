"""
Hybrid search engine for meme items.

This module ranks items for a query string either by vector similarity
with a filename/title boost, or by full-text relevance on descriptions
combined with a title/path substring match.
"""

import logging
import re
from typing import Dict, List, Tuple, Union

from ..errors import ValidationError
from ..models.embedding import EmbeddingModel
from ..models.schemas import MemeItem, SearchHit, SearchMode
from ..storage import ItemStore

logger = logging.getLogger(__name__)

VECTOR_CANDIDATES = 3
LEXICAL_CANDIDATES = 2
BOOST_BASE = 0.3
BOOST_RANGE = 0.4
SUBSTRING_SCORE = 0.5


class SearchValidationError(ValidationError):
    """Invalid search request."""


def query_terms(query: str) -> List[str]:
    """Lowercased whitespace-separated query tokens."""
    return query.lower().split()


def title_boost(item: MemeItem, terms: List[str]) -> float:
    """
    Additive boost for query tokens found in the item's filename or title.

    Returns 0 when no token matches, otherwise a value in [0.3, 0.7]
    growing with the share of matching tokens.
    """
    if not terms:
        return 0.0
    searchable = f"{item.filename.lower()} {(item.title or '').lower()}"
    matches = sum(1 for term in terms if term in searchable)
    if matches == 0:
        return 0.0
    return BOOST_BASE + BOOST_RANGE * (matches / len(terms))


class HybridSearchEngine:
    """
    Ranks stored items against a query.

    Vector mode merges nearest-embedding candidates with regex matches on
    title and path, then adds a filename/title boost to the cosine score.
    Text mode sums a full-text description score and a substring match.
    """

    def __init__(self, store: ItemStore, embedder: EmbeddingModel, max_limit: int = 200):
        """
        Initialize search engine.

        Args:
            store: Item store to search
            embedder: Model used to embed vector-mode queries
            max_limit: Largest accepted result limit
        """
        assert store is not None, "Store is required"
        assert embedder is not None, "Embedding model is required"

        self.store = store
        self.embedder = embedder
        self.max_limit = max_limit

    def _validate(self, mode: Union[str, SearchMode], limit: int) -> SearchMode:
        try:
            search_mode = SearchMode(mode)
        except ValueError as e:
            raise SearchValidationError(f"Unknown search mode: {mode}") from e
        if not 1 <= limit <= self.max_limit:
            raise SearchValidationError(
                f"Limit must be between 1 and {self.max_limit}, got {limit}"
            )
        return search_mode

    async def search(
        self,
        query: str,
        mode: Union[str, SearchMode] = SearchMode.VECTOR,
        limit: int = 20,
    ) -> List[SearchHit]:
        """
        Search items.

        Args:
            query: Query string
            mode: ``vector`` or ``text``
            limit: Maximum number of results

        Returns:
            Hits sorted by descending score

        Raises:
            SearchValidationError: If mode or limit is invalid
            EmbeddingModelError: If the query cannot be embedded
        """
        if not query or not query.strip():
            return []
        search_mode = self._validate(mode, limit)

        if search_mode == SearchMode.VECTOR:
            hits = await self.vector_search(query, limit)
        else:
            hits = self.text_search(query, limit)

        logger.debug(f"Search '{query}' ({search_mode.value}): {len(hits)} results")
        return hits

    async def vector_search(self, query: str, limit: int) -> List[SearchHit]:
        """Embedding similarity plus filename/title boost."""
        terms = query_terms(query)
        vector = await self.embedder.embed(query)

        candidates: List[Tuple[MemeItem, float]] = list(
            self.store.nearest_by_embedding(vector, limit * VECTOR_CANDIDATES)
        )
        pattern = "|".join(re.escape(term) for term in terms)
        for item in self.store.match_title_path(pattern, limit * LEXICAL_CANDIDATES):
            candidates.append((item, 0.0))

        seen = set()
        hits: List[SearchHit] = []
        for item, similarity in candidates:
            if item.id in seen:
                continue
            seen.add(item.id)
            hits.append(SearchHit(item=item, score=similarity + title_boost(item, terms)))

        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]

    def text_search(self, query: str, limit: int) -> List[SearchHit]:
        """Full-text description relevance plus title/path substring match."""
        terms = re.findall(r"\w+", query.lower())

        items: Dict[str, MemeItem] = {}
        scores: Dict[str, float] = {}

        for item, relevance in self.store.full_text_search(terms):
            items[item.id] = item
            scores[item.id] = scores.get(item.id, 0.0) + relevance

        for item in self.store.contains_title_path(query.lower()):
            items.setdefault(item.id, item)
            scores[item.id] = scores.get(item.id, 0.0) + SUBSTRING_SCORE

        hits = [
            SearchHit(item=items[item_id], score=score)
            for item_id, score in scores.items()
            if score > 0
        ]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]
