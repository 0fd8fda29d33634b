"""
Document Indexer

Runs the indexing path for one document:
budget gate -> chunk -> reserve budget -> embed -> store.

If embedding or storage fails after the reservation, the reservation is
released so a retry of the same file is not charged twice.

Re-indexing a document supersedes its previous chunks as a unit. A budget
rejection is returned as a result with a reason, not raised; chunking and
embedding failures propagate to the caller.
"""

import time
import logging
from dataclasses import dataclass
from typing import Optional

from .budget import BudgetCheck, ProcessingBudgetGovernor
from .chunker import Chunk, HierarchicalChunker

logger = logging.getLogger(__name__)

STATUS_INDEXED = "indexed"
STATUS_REJECTED = "rejected"
STATUS_EMPTY = "empty"


@dataclass
class IndexingResult:
    """Outcome of indexing one document."""
    document_id: str
    status: str
    parents_created: int = 0
    children_created: int = 0
    skipped_embeddings: int = 0
    truncated_embeddings: int = 0
    reason: Optional[str] = None
    budget: Optional[BudgetCheck] = None
    duration_ms: float = 0

    @property
    def chunks_created(self) -> int:
        return self.parents_created + self.children_created

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "status": self.status,
            "chunks_created": self.chunks_created,
            "parents_created": self.parents_created,
            "children_created": self.children_created,
            "skipped_embeddings": self.skipped_embeddings,
            "truncated_embeddings": self.truncated_embeddings,
            "reason": self.reason,
            "budget": self.budget.to_dict() if self.budget else None,
            "duration_ms": self.duration_ms,
        }


class DocumentIndexer:
    """
    Chunks, embeds and stores documents under a processing budget.

    Usage:
        indexer = DocumentIndexer(store, embeddings, governor)
        result = indexer.index_document(
            client_id, document_id, name="lease.txt", text=extracted_text,
        )
        if result.status == "rejected":
            print(result.reason)
    """

    def __init__(
        self,
        store,
        embeddings,
        governor: Optional[ProcessingBudgetGovernor] = None,
        chunker: Optional[HierarchicalChunker] = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.governor = governor or ProcessingBudgetGovernor()
        self.chunker = chunker or HierarchicalChunker()

    def index_document(
        self,
        client_id: str,
        document_id: str,
        name: str,
        text: str,
        document_type: str = "unknown",
        file_size_bytes: Optional[int] = None,
        file_type: Optional[str] = None,
        summary: str = "",
        page_breaks: Optional[list[int]] = None,
        section_headings: Optional[list] = None,
        confidence_score: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> IndexingResult:
        """
        Index extracted document text.

        Args:
            client_id: Owning tenant
            document_id: Document UUID (existing chunks are replaced)
            name: Display name
            text: Extracted document text
            document_type: Document classification (contract, pleading, ...)
            file_size_bytes: Source file size; defaults to the text's UTF-8 size
            file_type: File category used when the size is unknown
            summary: Optional document summary
            page_breaks: Ascending offsets where each new page begins
            section_headings: Ascending {"heading", "offset"} entries
            confidence_score: Optional extraction confidence (0-1)
            metadata: Extra document metadata

        Returns:
            IndexingResult

        Raises:
            ValueError: If page/section tables are malformed
            EmbeddingConfigurationError: If no embedding credentials exist
            EmbeddingBatchError: If embedding fails after retries (the
                budget reservation is released first)
        """
        if file_size_bytes is None and file_type is None:
            file_size_bytes = len((text or "").encode("utf-8"))

        return self._index(
            client_id=client_id,
            document_id=document_id,
            name=name,
            extracted_text=text or "",
            make_chunks=lambda: self.chunker.chunk(
                text or "", page_breaks=page_breaks, section_headings=section_headings,
            ),
            document_type=document_type,
            file_size_bytes=file_size_bytes,
            file_type=file_type,
            summary=summary,
            confidence_score=confidence_score,
            metadata=metadata,
        )

    def index_transcript(
        self,
        client_id: str,
        document_id: str,
        name: str,
        segments: list,
        document_type: str = "transcript",
        file_size_bytes: Optional[int] = None,
        file_type: Optional[str] = "audio",
        summary: str = "",
        metadata: Optional[dict] = None,
    ) -> IndexingResult:
        """
        Index a timestamped transcript.

        Args:
            segments: Ordered {"text", "start", "end"} entries (seconds)

        Other arguments match index_document().
        """
        transcript = self.chunker.transcript_text(segments)
        return self._index(
            client_id=client_id,
            document_id=document_id,
            name=name,
            extracted_text=transcript,
            make_chunks=lambda: self.chunker.chunk_transcript(segments),
            document_type=document_type,
            file_size_bytes=file_size_bytes,
            file_type=file_type,
            summary=summary,
            confidence_score=None,
            metadata=metadata,
        )

    def _index(
        self,
        client_id: str,
        document_id: str,
        name: str,
        extracted_text: str,
        make_chunks,
        document_type: str,
        file_size_bytes: Optional[int],
        file_type: Optional[str],
        summary: str,
        confidence_score: Optional[float],
        metadata: Optional[dict],
    ) -> IndexingResult:
        start_time = time.time()

        # Preview only; usage is reserved once there are chunks to embed
        preview = self.governor.check_file(client_id, file_size_bytes, file_type)
        if not preview.allowed:
            logger.info(f"Indexing {document_id} rejected by budget: {preview.reason}")
            return IndexingResult(
                document_id=document_id,
                status=STATUS_REJECTED,
                reason=preview.reason,
                budget=preview,
            )

        chunks: list[Chunk] = make_chunks()
        if not chunks:
            logger.info(f"Document {document_id} has no text to index")
            self.store.upsert_document(
                document_id, client_id, name, document_type, summary,
                extracted_text, confidence_score, metadata,
            )
            self.store.delete_document_chunks(document_id, client_id)
            return IndexingResult(
                document_id=document_id,
                status=STATUS_EMPTY,
                budget=preview,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )

        budget = self.governor.try_reserve(client_id, file_size_bytes, file_type)
        if not budget.allowed:
            logger.info(f"Indexing {document_id} rejected by budget: {budget.reason}")
            return IndexingResult(
                document_id=document_id,
                status=STATUS_REJECTED,
                reason=budget.reason,
                budget=budget,
            )

        try:
            embedding_result = self.embeddings.embed_batch_detailed([c.content for c in chunks])

            self.store.upsert_document(
                document_id, client_id, name, document_type, summary,
                extracted_text, confidence_score, metadata,
            )
            self.store.replace_document_chunks(
                document_id, client_id, chunks, embedding_result.vectors,
            )
        except Exception as e:
            logger.error(f"Indexing {document_id} failed, releasing budget: {e}")
            self.governor.release(client_id, file_size_bytes, file_type, day=budget.usage.day)
            raise

        parents = sum(1 for c in chunks if c.is_parent)
        duration_ms = round((time.time() - start_time) * 1000, 2)
        logger.info(
            f"Indexed {document_id}: {parents} parents, {len(chunks) - parents} children "
            f"in {duration_ms}ms"
        )
        return IndexingResult(
            document_id=document_id,
            status=STATUS_INDEXED,
            parents_created=parents,
            children_created=len(chunks) - parents,
            skipped_embeddings=len(embedding_result.skipped_indices),
            truncated_embeddings=len(embedding_result.truncated_indices),
            budget=budget,
            duration_ms=duration_ms,
        )
