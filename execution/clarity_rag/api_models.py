"""
Pydantic models for the Clarity retrieval API.
"""

from typing import Literal, Optional
from datetime import datetime
from pydantic import BaseModel, Field


class DateRangeModel(BaseModel):
    """Inclusive document creation date window."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class SearchFiltersModel(BaseModel):
    """Optional search filters."""
    document_types: list[str] = []
    date_range: Optional[DateRangeModel] = None
    parties: list[str] = []
    confidence_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SearchRequestModel(BaseModel):
    """Request body for the search endpoint."""
    query: str = Field(..., min_length=1, max_length=2000)
    tenant_scope: Optional[str] = None  # Falls back to the X-Client-ID header
    mode: Literal["lexical", "vector", "hybrid"] = "hybrid"
    filters: SearchFiltersModel = SearchFiltersModel()
    limit: int = Field(default=20, ge=1, le=100)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)


class SearchResultModel(BaseModel):
    """One ranked document."""
    document_id: str
    document_name: str
    document_type: str
    summary: str = ""
    similarity_score: float
    extracted_text: str = ""
    highlighted_snippet: str = ""
    metadata: dict = {}


class QueryExpansionModel(BaseModel):
    expanded_query: str
    suggested_terms: list[str] = []


class SearchMetadataModel(BaseModel):
    mode: str
    result_count: int
    duration_ms: float
    similarity_threshold: float
    partial: bool = False
    failed_branches: list[str] = []


class SearchResponseModel(BaseModel):
    """Response body for the search endpoint."""
    results: list[SearchResultModel]
    query_expansion: QueryExpansionModel
    metadata: SearchMetadataModel


class BudgetCheckRequest(BaseModel):
    """Request body for a processing budget check."""
    file_count: int = Field(default=1, ge=0)
    total_bytes: int = Field(default=0, ge=0)
    tenant_scope: Optional[str] = None


class BudgetCheckResponse(BaseModel):
    """Whether a workload fits today's processing budget."""
    allowed: bool
    reason: Optional[str] = None
    remaining_files: int
    remaining_bytes: int


class BudgetUsageResponse(BaseModel):
    """Today's processing usage for a tenant."""
    day: str
    files_processed: int
    bytes_processed: int
    remaining_files: int
    remaining_bytes: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str


class SimilarDocumentsResponseModel(BaseModel):
    """Documents similar to a reference document."""
    document_id: str
    reference_summary: str = ""
    results: list[SearchResultModel]
    result_count: int
    similarity_threshold: float
    duration_ms: float


class TranscriptSegmentModel(BaseModel):
    """One timed transcript segment (seconds)."""
    text: str
    start: float = Field(..., ge=0.0)
    end: float = Field(..., ge=0.0)


class SectionHeadingModel(BaseModel):
    """A section heading and the offset where it starts."""
    heading: str
    offset: int = Field(..., ge=0)


class IndexDocumentRequest(BaseModel):
    """Request body for indexing one document (text or transcript, not both)."""
    name: str = Field(..., min_length=1, max_length=500)
    text: Optional[str] = None
    segments: Optional[list[TranscriptSegmentModel]] = None
    document_type: Optional[str] = None  # Defaults to unknown, or transcript for segments
    file_size_bytes: Optional[int] = Field(default=None, ge=0)
    file_type: Optional[str] = None
    summary: str = ""
    page_breaks: Optional[list[int]] = None
    section_headings: Optional[list[SectionHeadingModel]] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    metadata: dict = {}
    tenant_scope: Optional[str] = None


class IndexDocumentResponse(BaseModel):
    """Outcome of indexing; budget rejections come back with allowed=false."""
    document_id: str
    status: str
    allowed: bool
    reason: Optional[str] = None
    chunks_created: int = 0
    parents_created: int = 0
    children_created: int = 0
    skipped_embeddings: int = 0
    truncated_embeddings: int = 0
    remaining_files: Optional[int] = None
    remaining_bytes: Optional[int] = None
    duration_ms: float = 0
