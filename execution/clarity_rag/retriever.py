"""
Hybrid Search Service

Answers a search request in four stages:
1. Query expansion (best-effort)
2. Lexical and/or vector retrieval; in hybrid mode both branches run in
   parallel, each asked for half the limit
3. Merge into one ranked list
4. Snippet highlighting, response metadata and analytics

In hybrid mode a failed or timed-out branch does not blank out the other:
the response carries the surviving branch's results and is marked partial.
"""

import math
import time
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Optional

from .analytics import SearchAnalyticsRecord
from .embeddings import EmbeddingConfigurationError
from .query_expansion import QueryExpansion
from .ranking import MergeConfig, apply_highlights, highlight_terms, merge_results
from .searchers import (
    DEFAULT_SIMILARITY_THRESHOLD,
    LexicalSearcher,
    SearchBranchError,
    SearchFilters,
    VectorSearcher,
)
from .vector_store import SearchResult

logger = logging.getLogger(__name__)

MODE_LEXICAL = "lexical"
MODE_VECTOR = "vector"
MODE_HYBRID = "hybrid"
SEARCH_MODES = (MODE_LEXICAL, MODE_VECTOR, MODE_HYBRID)

SIMILAR_DOCUMENTS_THRESHOLD = 0.8
SIMILAR_DOCUMENTS_LIMIT = 10


class SearchError(Exception):
    """Raised when no requested search branch produced results."""

    def __init__(self, message: str, failed_branches: Optional[list[str]] = None):
        super().__init__(message)
        self.failed_branches = failed_branches or []


class DocumentNotFoundError(LookupError):
    """Raised when a reference document does not exist or has no embeddings."""


@dataclass
class SearchConfig:
    """Configuration for the search service."""
    branch_timeout_seconds: float = 15.0
    default_limit: int = 20
    max_limit: int = 100
    merge: MergeConfig = field(default_factory=MergeConfig)


@dataclass
class SearchRequest:
    """A tenant-scoped search request."""
    tenant_scope: str
    query: str
    mode: str = MODE_HYBRID
    filters: SearchFilters = field(default_factory=SearchFilters)
    limit: int = 20
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD


@dataclass
class SearchMetadata:
    """How a search was executed."""
    mode: str
    result_count: int
    duration_ms: float
    similarity_threshold: float
    partial: bool = False
    failed_branches: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "result_count": self.result_count,
            "duration_ms": self.duration_ms,
            "similarity_threshold": self.similarity_threshold,
            "partial": self.partial,
            "failed_branches": self.failed_branches,
        }


@dataclass
class SearchResponse:
    """Ranked results plus expansion and execution metadata."""
    results: list[SearchResult]
    query_expansion: QueryExpansion
    metadata: SearchMetadata

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "query_expansion": self.query_expansion.to_dict(),
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class SimilarDocumentsResponse:
    """Documents close to a reference document."""
    document_id: str
    reference_summary: str
    results: list[SearchResult]
    similarity_threshold: float
    duration_ms: float

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "reference_summary": self.reference_summary,
            "results": [r.to_dict() for r in self.results],
            "result_count": len(self.results),
            "similarity_threshold": self.similarity_threshold,
            "duration_ms": self.duration_ms,
        }


class HybridSearchService:
    """
    Orchestrates expansion, retrieval, merging and highlighting.

    Usage:
        service = HybridSearchService(store, embeddings, expander)
        response = service.search(SearchRequest(
            tenant_scope=client_id,
            query="termination for breach",
            mode="hybrid",
        ))
    """

    def __init__(
        self,
        store,
        embeddings,
        expander=None,
        config: Optional[SearchConfig] = None,
        analytics=None,
        lexical_searcher: Optional[LexicalSearcher] = None,
        vector_searcher: Optional[VectorSearcher] = None,
    ):
        """
        Initialize the search service.

        Args:
            store: DocumentStore used by both searchers
            embeddings: Embedding service for the vector branch
            expander: Optional QueryExpander; no expansion if None
            config: Optional configuration
            analytics: Optional SearchAnalyticsRecorder
            lexical_searcher: Override for the lexical branch
            vector_searcher: Override for the vector branch
        """
        self.store = store
        self.config = config or SearchConfig()
        self.expander = expander
        self.analytics = analytics
        self.lexical = lexical_searcher or LexicalSearcher(store)
        self.vector = vector_searcher or VectorSearcher(store, embeddings)

    def _expand(self, query: str) -> QueryExpansion:
        if self.expander is None:
            return QueryExpansion(expanded_query=query, suggested_terms=[])
        try:
            return self.expander.expand(query)
        except Exception as e:
            logger.warning(f"Query expansion failed: {e}. Using original query.")
            return QueryExpansion(expanded_query=query, suggested_terms=[])

    def _validate(self, request: SearchRequest) -> None:
        if not request.query or not request.query.strip():
            raise ValueError("Search query must not be empty")
        if request.mode not in SEARCH_MODES:
            raise ValueError(
                f"Invalid search mode: {request.mode} (expected one of {', '.join(SEARCH_MODES)})"
            )
        if request.limit < 1:
            raise ValueError("Search limit must be at least 1")
        if not request.tenant_scope:
            raise ValueError("Search requires a tenant scope")

    def search(self, request: SearchRequest) -> SearchResponse:
        """
        Execute a search.

        Args:
            request: The search request

        Returns:
            SearchResponse with ranked, highlighted results

        Raises:
            ValueError: If the request is malformed
            SearchError: If every requested branch failed
            EmbeddingConfigurationError: If the vector branch has no credentials
        """
        self._validate(request)
        start_time = time.time()
        limit = min(request.limit, self.config.max_limit)

        expansion = self._expand(request.query)
        failed: list[str] = []

        if request.mode == MODE_LEXICAL:
            results = self._run_single(
                lambda: self.lexical.search(
                    request.tenant_scope, request.query, request.filters, limit,
                ),
                MODE_LEXICAL,
            )
        elif request.mode == MODE_VECTOR:
            results = self._run_single(
                lambda: self.vector.search(
                    request.tenant_scope, expansion.expanded_query, request.filters,
                    limit, request.similarity_threshold,
                ),
                MODE_VECTOR,
            )
        else:
            lexical_results, vector_results, failed = self._run_hybrid(
                request, expansion, math.ceil(limit / 2),
            )
            results = merge_results(lexical_results, vector_results, self.config.merge)[:limit]

        terms = highlight_terms(request.query, expansion.expanded_query)
        apply_highlights(results, terms, self.config.merge)

        duration_ms = round((time.time() - start_time) * 1000, 2)
        metadata = SearchMetadata(
            mode=request.mode,
            result_count=len(results),
            duration_ms=duration_ms,
            similarity_threshold=request.similarity_threshold,
            partial=bool(failed),
            failed_branches=failed,
        )
        logger.info(
            f"Search ({request.mode}) returned {len(results)} results in {duration_ms}ms"
            + (f" [partial: {', '.join(failed)} failed]" if failed else "")
        )

        self._record_analytics(request, expansion, metadata)
        return SearchResponse(results=results, query_expansion=expansion, metadata=metadata)

    def similar_documents(
        self,
        tenant_scope: str,
        document_id: str,
        similarity_threshold: float = SIMILAR_DOCUMENTS_THRESHOLD,
        limit: int = SIMILAR_DOCUMENTS_LIMIT,
    ) -> SimilarDocumentsResponse:
        """
        Find documents similar to an indexed document.

        Uses the document's own stored embedding as the query, so nothing
        is sent to the embedding provider. The reference document is never
        part of the results.

        Args:
            tenant_scope: Tenant owning the reference document
            document_id: Reference document
            similarity_threshold: Minimum cosine similarity
            limit: Maximum number of similar documents

        Returns:
            SimilarDocumentsResponse

        Raises:
            ValueError: If the arguments are malformed
            DocumentNotFoundError: If the document is missing or not embedded
            SearchError: If the store query fails
        """
        if not tenant_scope:
            raise ValueError("Similar document search requires a tenant scope")
        if not document_id:
            raise ValueError("Similar document search requires a document id")
        if limit < 1:
            raise ValueError("Search limit must be at least 1")
        limit = min(limit, self.config.max_limit)
        start_time = time.time()

        try:
            reference = self.store.get_document_embedding(document_id, tenant_scope)
            if reference is None:
                raise DocumentNotFoundError(
                    f"Document {document_id} not found or not yet indexed"
                )
            # One extra row in case the reference document is among the hits
            rows = self.store.vector_search(
                client_id=tenant_scope,
                query_embedding=reference["embedding"],
                limit=limit + 1,
                similarity_threshold=similarity_threshold,
            )
        except DocumentNotFoundError:
            raise
        except Exception as e:
            logger.error(f"Similar document search failed for {document_id}: {e}")
            raise SearchError(
                f"Similar document search failed: {e}", failed_branches=[MODE_VECTOR],
            ) from e

        results = [r for r in rows if r.document_id != document_id][:limit]
        duration_ms = round((time.time() - start_time) * 1000, 2)
        logger.info(
            f"Found {len(results)} documents similar to {document_id} in {duration_ms}ms"
        )
        return SimilarDocumentsResponse(
            document_id=document_id,
            reference_summary=reference["summary"],
            results=results,
            similarity_threshold=similarity_threshold,
            duration_ms=duration_ms,
        )

    def _run_single(self, operation, branch: str) -> list[SearchResult]:
        try:
            return operation()
        except SearchBranchError as e:
            raise SearchError(f"{branch} search failed: {e}", failed_branches=[branch]) from e

    def _run_hybrid(
        self,
        request: SearchRequest,
        expansion: QueryExpansion,
        branch_limit: int,
    ) -> tuple[list[SearchResult], list[SearchResult], list[str]]:
        """Run both branches in parallel, tolerating one failure."""
        tasks = {
            MODE_LEXICAL: lambda: self.lexical.search(
                request.tenant_scope, request.query, request.filters, branch_limit,
            ),
            MODE_VECTOR: lambda: self.vector.search(
                request.tenant_scope, expansion.expanded_query, request.filters,
                branch_limit, request.similarity_threshold,
            ),
        }

        branch_results: dict[str, list[SearchResult]] = {MODE_LEXICAL: [], MODE_VECTOR: []}
        failed: list[str] = []

        # A hung branch is abandoned, never joined
        executor = ThreadPoolExecutor(max_workers=len(tasks))
        try:
            deadline = time.time() + self.config.branch_timeout_seconds
            future_map = {name: executor.submit(fn) for name, fn in tasks.items()}
            for name, future in future_map.items():
                try:
                    branch_results[name] = future.result(timeout=max(0.0, deadline - time.time()))
                except FuturesTimeoutError:
                    future.cancel()
                    logger.warning(
                        f"Search branch ({name}) timed out after "
                        f"{self.config.branch_timeout_seconds}s"
                    )
                    failed.append(name)
                except EmbeddingConfigurationError:
                    raise
                except Exception as e:
                    logger.warning(f"Search branch ({name}) failed: {e}")
                    failed.append(name)
        finally:
            executor.shutdown(wait=False)

        if len(failed) == len(tasks):
            raise SearchError("All search branches failed", failed_branches=failed)

        return branch_results[MODE_LEXICAL], branch_results[MODE_VECTOR], failed

    def _record_analytics(
        self,
        request: SearchRequest,
        expansion: QueryExpansion,
        metadata: SearchMetadata,
    ) -> None:
        if self.analytics is None:
            return
        try:
            self.analytics.record(SearchAnalyticsRecord(
                client_id=request.tenant_scope,
                query=request.query,
                mode=request.mode,
                results_count=metadata.result_count,
                duration_ms=metadata.duration_ms,
                expanded_query=expansion.expanded_query,
                suggested_terms=expansion.suggested_terms,
                partial=metadata.partial,
            ))
        except Exception as e:
            logger.warning(f"Failed to record search analytics: {e}")


def get_search_service(store=None, embeddings=None) -> HybridSearchService:
    """
    Build a search service with default components.

    Creates and connects a DocumentStore when none is given.
    """
    from .analytics import get_search_analytics
    from .embeddings import get_embedding_service
    from .query_expansion import QueryExpander

    if store is None:
        from .vector_store import DocumentStore
        store = DocumentStore()
        store.connect()

    return HybridSearchService(
        store,
        embeddings or get_embedding_service(),
        expander=QueryExpander(),
        analytics=get_search_analytics(store),
    )


# CLI for testing
if __name__ == "__main__":
    import sys
    import json
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) < 3:
        print("Usage: python -m execution.clarity_rag.retriever <client_id> <query...>")
        sys.exit(1)

    service = get_search_service()
    response = service.search(SearchRequest(
        tenant_scope=sys.argv[1],
        query=" ".join(sys.argv[2:]),
    ))
    print(json.dumps(response.to_dict(), indent=2, default=str))
