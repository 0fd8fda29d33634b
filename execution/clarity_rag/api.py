"""
FastAPI Backend for the Clarity retrieval pipeline

Exposes hybrid search, similar-document lookup, budget-gated indexing and
processing budget checks over REST.

Run with: uvicorn execution.clarity_rag.api:app --host 0.0.0.0 --port 8000
"""

import os
import time
import uuid
import logging
from typing import Optional
from collections import defaultdict

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from .api_models import (
    SearchRequestModel, SearchResponseModel,
    BudgetCheckRequest, BudgetCheckResponse, BudgetUsageResponse,
    HealthResponse, SimilarDocumentsResponseModel,
    IndexDocumentRequest, IndexDocumentResponse,
)
from .embeddings import EmbeddingBatchError, EmbeddingConfigurationError
from .indexer import STATUS_REJECTED
from .retriever import (
    DocumentNotFoundError, SearchError, SearchRequest,
    SIMILAR_DOCUMENTS_LIMIT, SIMILAR_DOCUMENTS_THRESHOLD,
)
from .searchers import SearchFilters
from .vector_store import DateRange

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"

app = FastAPI(
    title="Clarity Retrieval API",
    description="Hybrid document search with a daily processing budget",
    version=API_VERSION,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """Simple in-memory rate limiter using sliding window."""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60):
        self._max_requests = max_requests
        self._window = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)

    def is_allowed(self, key: str) -> bool:
        """Check if request is allowed for the given key."""
        now = time.time()
        window_start = now - self._window
        self._requests[key] = [t for t in self._requests[key] if t > window_start]

        if len(self._requests[key]) >= self._max_requests:
            return False

        self._requests[key].append(now)
        return True


_rate_limiter = RateLimiter(
    max_requests=int(os.getenv("RATE_LIMIT_RPM", "60")),
    window_seconds=60,
)


async def check_rate_limit(request: Request):
    """FastAPI dependency that enforces rate limiting per client."""
    key = request.headers.get("x-client-id") or (request.client.host if request.client else "anonymous")
    if not _rate_limiter.is_allowed(key):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")


# =============================================================================
# Service Container
# =============================================================================

class ServiceContainer:
    """Lazily builds and caches the store and services."""

    def __init__(self):
        self._store = None
        self._search_service = None
        self._governor = None
        self._indexer = None

    def get_store(self):
        if self._store is None:
            from .vector_store import DocumentStore
            self._store = DocumentStore()
            self._store.connect()
            self._store.initialize_schema()
        return self._store

    def get_search_service(self):
        if self._search_service is None:
            from .retriever import get_search_service
            self._search_service = get_search_service(store=self.get_store())
        return self._search_service

    def get_governor(self):
        if self._governor is None:
            from .budget import ProcessingBudgetGovernor, PostgresUsageStore
            self._governor = ProcessingBudgetGovernor(PostgresUsageStore(self.get_store()))
        return self._governor

    def get_indexer(self):
        if self._indexer is None:
            from .embeddings import get_embedding_service
            from .indexer import DocumentIndexer
            self._indexer = DocumentIndexer(
                self.get_store(), get_embedding_service(), governor=self.get_governor(),
            )
        return self._indexer


_container = ServiceContainer()


def _parse_uuid(value: str, label: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid {label}: must be a UUID")


def resolve_tenant(body_scope: Optional[str], header_scope: Optional[str]) -> str:
    """Tenant from the request body, else the X-Client-ID header. Must be a UUID."""
    tenant = (body_scope or header_scope or "").strip()
    if not tenant:
        raise HTTPException(
            status_code=400,
            detail="Missing tenant scope (tenant_scope field or X-Client-ID header)",
        )
    return _parse_uuid(tenant, "tenant scope")


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    try:
        _container.get_store()
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(status="ok", version=API_VERSION, database=db_status)


@app.post("/api/v1/search", response_model=SearchResponseModel, dependencies=[Depends(check_rate_limit)])
def search_documents(
    body: SearchRequestModel,
    x_client_id: Optional[str] = Header(None),
):
    """Run a lexical, vector or hybrid search."""
    tenant = resolve_tenant(body.tenant_scope, x_client_id)

    date_range = None
    if body.filters.date_range is not None:
        date_range = DateRange(
            start=body.filters.date_range.start,
            end=body.filters.date_range.end,
        )

    request = SearchRequest(
        tenant_scope=tenant,
        query=body.query,
        mode=body.mode,
        filters=SearchFilters(
            document_types=body.filters.document_types,
            date_range=date_range,
            parties=body.filters.parties,
            confidence_threshold=body.filters.confidence_threshold,
        ),
        limit=body.limit,
        similarity_threshold=body.similarity_threshold,
    )

    try:
        response = _container.get_search_service().search(request)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SearchError as e:
        logger.error(f"Search failed for {tenant}: {e}")
        raise HTTPException(status_code=502, detail=f"Search failed: {e}")
    except EmbeddingConfigurationError as e:
        logger.error(f"Search unavailable: {e}")
        raise HTTPException(status_code=503, detail=f"Search unavailable: {e}")

    return response.to_dict()


@app.get(
    "/api/v1/documents/{document_id}/similar",
    response_model=SimilarDocumentsResponseModel,
    dependencies=[Depends(check_rate_limit)],
)
def find_similar_documents(
    document_id: str,
    similarity_threshold: float = Query(SIMILAR_DOCUMENTS_THRESHOLD, ge=0.0, le=1.0),
    limit: int = Query(SIMILAR_DOCUMENTS_LIMIT, ge=1, le=100),
    x_client_id: Optional[str] = Header(None),
):
    """Documents whose content is close to an indexed document."""
    tenant = resolve_tenant(None, x_client_id)
    document_id = _parse_uuid(document_id, "document id")

    try:
        response = _container.get_search_service().similar_documents(
            tenant, document_id, similarity_threshold=similarity_threshold, limit=limit,
        )
    except DocumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SearchError as e:
        logger.error(f"Similar document search failed for {tenant}: {e}")
        raise HTTPException(status_code=502, detail=f"Search failed: {e}")

    return response.to_dict()


@app.post(
    "/api/v1/documents/{document_id}/index",
    response_model=IndexDocumentResponse,
    dependencies=[Depends(check_rate_limit)],
)
def index_document(
    document_id: str,
    body: IndexDocumentRequest,
    x_client_id: Optional[str] = Header(None),
):
    """
    Chunk, embed and store one document's extracted text or transcript.

    A document over today's processing budget is not an error: the
    response carries allowed=false and the reason.
    """
    tenant = resolve_tenant(body.tenant_scope, x_client_id)
    document_id = _parse_uuid(document_id, "document id")

    if (body.text is None) == (body.segments is None):
        raise HTTPException(status_code=422, detail="Provide exactly one of text or segments")

    indexer = _container.get_indexer()
    try:
        if body.segments is not None:
            result = indexer.index_transcript(
                tenant, document_id, body.name,
                [s.model_dump() for s in body.segments],
                document_type=body.document_type or "transcript",
                file_size_bytes=body.file_size_bytes,
                file_type=body.file_type or "audio",
                summary=body.summary,
                metadata=body.metadata,
            )
        else:
            result = indexer.index_document(
                tenant, document_id, body.name, body.text,
                document_type=body.document_type or "unknown",
                file_size_bytes=body.file_size_bytes,
                file_type=body.file_type,
                summary=body.summary,
                page_breaks=body.page_breaks,
                section_headings=(
                    [h.model_dump() for h in body.section_headings]
                    if body.section_headings is not None else None
                ),
                confidence_score=body.confidence_score,
                metadata=body.metadata,
            )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except EmbeddingConfigurationError as e:
        logger.error(f"Indexing unavailable: {e}")
        raise HTTPException(status_code=503, detail=f"Indexing unavailable: {e}")
    except EmbeddingBatchError as e:
        logger.error(f"Indexing {document_id} failed for {tenant}: {e}")
        raise HTTPException(status_code=502, detail=f"Embedding failed: {e}")

    return IndexDocumentResponse(
        document_id=result.document_id,
        status=result.status,
        allowed=result.status != STATUS_REJECTED,
        reason=result.reason,
        chunks_created=result.chunks_created,
        parents_created=result.parents_created,
        children_created=result.children_created,
        skipped_embeddings=result.skipped_embeddings,
        truncated_embeddings=result.truncated_embeddings,
        remaining_files=result.budget.remaining_files if result.budget else None,
        remaining_bytes=result.budget.remaining_bytes if result.budget else None,
        duration_ms=result.duration_ms,
    )


@app.post("/api/v1/budget/check", response_model=BudgetCheckResponse)
def check_budget(
    body: BudgetCheckRequest,
    x_client_id: Optional[str] = Header(None),
):
    """Check whether a workload fits today's processing budget."""
    tenant = resolve_tenant(body.tenant_scope, x_client_id)
    check = _container.get_governor().check_budget(tenant, body.file_count, body.total_bytes)
    return BudgetCheckResponse(
        allowed=check.allowed,
        reason=check.reason,
        remaining_files=check.remaining_files,
        remaining_bytes=check.remaining_bytes,
    )


@app.get("/api/v1/budget/usage", response_model=BudgetUsageResponse)
def get_budget_usage(x_client_id: Optional[str] = Header(None)):
    """Today's processing usage for the calling tenant."""
    tenant = resolve_tenant(None, x_client_id)
    governor = _container.get_governor()
    usage = governor.get_usage(tenant)
    return BudgetUsageResponse(
        day=usage.day.isoformat(),
        files_processed=usage.files_processed,
        bytes_processed=usage.bytes_processed,
        remaining_files=max(0, governor.limits.daily_file_limit - usage.files_processed),
        remaining_bytes=max(0, governor.limits.daily_byte_limit - usage.bytes_processed),
    )
