"""
Lexical and Vector Searchers

Two independent retrieval branches over the document store:
- LexicalSearcher: full-text search; hits get a flat baseline score since
  ts_rank values are not on a 0-1 similarity scale
- VectorSearcher: embeds the (expanded) query and runs a thresholded
  similarity search, then filters by document type and parties in memory
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .embeddings import EmbeddingConfigurationError
from .vector_store import DateRange, SearchResult

logger = logging.getLogger(__name__)

LEXICAL_BASELINE_SCORE = 0.8
DEFAULT_SIMILARITY_THRESHOLD = 0.7


@dataclass
class SearchFilters:
    """Optional restrictions applied by the searchers."""
    document_types: list[str] = field(default_factory=list)
    date_range: Optional[DateRange] = None
    parties: list[str] = field(default_factory=list)
    confidence_threshold: Optional[float] = None


class SearchBranchError(Exception):
    """Raised when one retrieval branch (lexical or vector) fails."""

    def __init__(self, message: str, branch: str):
        super().__init__(message)
        self.branch = branch


def matches_parties(result: SearchResult, parties: list[str]) -> bool:
    """True if any party appears (case-insensitive) in the text or summary."""
    text = (result.extracted_text or "").lower()
    summary = (result.summary or "").lower()
    for party in parties:
        needle = party.strip().lower()
        if needle and (needle in text or needle in summary):
            return True
    return False


class LexicalSearcher:
    """Full-text search branch."""

    branch = "lexical"

    def __init__(self, store, baseline_score: float = LEXICAL_BASELINE_SCORE):
        self.store = store
        self.baseline_score = baseline_score

    def search(
        self,
        client_id: str,
        query: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 20,
    ) -> list[SearchResult]:
        """
        Run a full-text search.

        Args:
            client_id: Tenant to search within
            query: The user's raw query
            filters: Document type, confidence and date filters
            limit: Maximum number of results

        Returns:
            Up to ``limit`` results, each scored at the baseline

        Raises:
            SearchBranchError: If the store query fails
        """
        filters = filters or SearchFilters()
        try:
            rows = self.store.keyword_search(
                client_id=client_id,
                query=query,
                limit=limit,
                document_types=filters.document_types or None,
                confidence_threshold=filters.confidence_threshold,
                date_range=filters.date_range,
            )
        except Exception as e:
            logger.error(f"Lexical search failed: {e}")
            raise SearchBranchError(f"Lexical search failed: {e}", branch=self.branch) from e

        for row in rows:
            row.metadata = {**row.metadata, "lexical_rank": row.similarity_score}
            row.similarity_score = self.baseline_score

        logger.info(f"Lexical search returned {len(rows)} results")
        return rows[:limit]


class VectorSearcher:
    """Embedding similarity search branch."""

    branch = "vector"

    def __init__(self, store, embeddings):
        self.store = store
        self.embeddings = embeddings

    def search(
        self,
        client_id: str,
        query: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 20,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> list[SearchResult]:
        """
        Run a similarity search.

        Args:
            client_id: Tenant to search within
            query: Query text to embed (usually the expanded query)
            filters: Document type, party and date filters
            limit: Maximum number of results
            similarity_threshold: Minimum cosine similarity

        Returns:
            Up to ``limit`` results with their true similarity scores

        Raises:
            SearchBranchError: If embedding or the store query fails
            EmbeddingConfigurationError: If no embedding credentials exist
        """
        filters = filters or SearchFilters()
        try:
            query_embedding = self.embeddings.embed_text(query)
            if not query_embedding:
                logger.warning("Empty query embedding, vector search skipped")
                return []
            rows = self.store.vector_search(
                client_id=client_id,
                query_embedding=query_embedding,
                limit=limit,
                similarity_threshold=similarity_threshold,
                date_range=filters.date_range,
            )
        except EmbeddingConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Vector search failed: {e}")
            raise SearchBranchError(f"Vector search failed: {e}", branch=self.branch) from e

        if filters.document_types:
            allowed = set(filters.document_types)
            rows = [r for r in rows if r.document_type in allowed]

        if filters.parties:
            rows = [r for r in rows if matches_parties(r, filters.parties)]

        logger.info(f"Vector search returned {len(rows)} results")
        return rows[:limit]
