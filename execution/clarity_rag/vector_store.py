"""
Document Store with PostgreSQL + pgvector

Stores documents, their parent/child chunk index with embeddings, daily
processing usage and search analytics. Provides the two retrieval
primitives the searchers build on:
- keyword_search(): PostgreSQL full-text search (ts_rank)
- vector_search(): cosine similarity over chunk embeddings

Both return one row per document (its best-matching chunk), always scoped
to a single tenant via client_id.
"""

import os
import json
import logging
from datetime import datetime
from typing import Optional
from dataclasses import dataclass, field
from contextlib import contextmanager

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

from .chunker import Chunk, PARENT, CHILD

logger = logging.getLogger(__name__)

VALID_FTS_CONFIGS = {"english", "simple"}


@dataclass
class DocumentStoreConfig:
    """Configuration for the document store."""
    connection_string: Optional[str] = None
    embedding_dimensions: int = 1536
    fts_language: str = "english"
    # Connection pooling settings
    pool_min_connections: int = 2
    pool_max_connections: int = 20
    use_pooling: bool = True  # Set to False for simple single-connection mode


@dataclass
class SearchResult:
    """A document-level search hit."""
    document_id: str
    document_name: str
    document_type: str
    summary: str
    similarity_score: float
    extracted_text: str
    highlighted_snippet: str = ""
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "document_name": self.document_name,
            "document_type": self.document_type,
            "summary": self.summary,
            "similarity_score": self.similarity_score,
            "extracted_text": self.extracted_text,
            "highlighted_snippet": self.highlighted_snippet,
            "metadata": self.metadata,
        }


@dataclass
class DateRange:
    """Inclusive document creation date window; either end may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class DocumentStore:
    """
    PostgreSQL store for documents, chunks and usage counters.

    Features:
    - Parent/child chunk index with pgvector embeddings
    - Atomic replacement of a document's chunks on re-processing
    - Full-text and cosine similarity search, one hit per document
    - Multi-tenant isolation via client_id
    """

    def __init__(self, config: Optional[DocumentStoreConfig] = None):
        """
        Initialize document store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or DocumentStoreConfig()
        self._conn = None
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/clarity"
        )
        if self.config.fts_language not in VALID_FTS_CONFIGS:
            logger.warning(
                f"Invalid FTS language '{self.config.fts_language}', falling back to 'english'"
            )
            self.config.fts_language = "english"

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        if psycopg2 is None:
            raise ImportError(
                "psycopg2 not installed. Run: pip install psycopg2-binary"
            )
        from psycopg2.extras import RealDictCursor

        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self._connection_string,
                    cursor_factory=RealDictCursor
                )
                self._conn.autocommit = False
                logger.info("Connected to PostgreSQL with pgvector (single connection)")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        """Get a database connection (from pool or single connection)."""
        if self._pool:
            return self._pool.getconn()

        if self._conn is None or self._conn.closed:
            self.connect()
        return self._conn

    def _release_connection(self, conn):
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    def _ensure_connection(self):
        """Ensure we have a connection (pool or single) and return it."""
        if not self._conn and not self._pool:
            self.connect()
        return self._get_connection()

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")

        Automatically releases connection back to pool when done.
        """
        conn = self._ensure_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._ensure_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.close()
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        fts = self.config.fts_language
        schema_sql = f"""
        CREATE EXTENSION IF NOT EXISTS vector;

        CREATE TABLE IF NOT EXISTS documents (
            id UUID PRIMARY KEY,
            client_id UUID NOT NULL,
            name TEXT NOT NULL,
            document_type TEXT DEFAULT 'unknown',
            summary TEXT DEFAULT '',
            extracted_text TEXT DEFAULT '',
            confidence_score REAL,
            metadata JSONB DEFAULT '{{}}',
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS document_chunks (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            document_id UUID NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
            client_id UUID NOT NULL,
            chunk_type VARCHAR(10) NOT NULL,
            chunk_index INT NOT NULL,
            parent_chunk_id UUID REFERENCES document_chunks(id) ON DELETE CASCADE,
            content TEXT NOT NULL,
            char_start INT NOT NULL,
            char_end INT NOT NULL,
            page_number INT,
            section_heading TEXT,
            timestamp_start DOUBLE PRECISION,
            timestamp_end DOUBLE PRECISION,
            embedding VECTOR({self.config.embedding_dimensions}),
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS processing_usage (
            client_id TEXT NOT NULL,
            day DATE NOT NULL,
            files_processed INT NOT NULL DEFAULT 0,
            bytes_processed BIGINT NOT NULL DEFAULT 0,
            PRIMARY KEY (client_id, day)
        );

        CREATE TABLE IF NOT EXISTS search_analytics (
            id BIGSERIAL PRIMARY KEY,
            client_id TEXT,
            search_query TEXT NOT NULL,
            search_type VARCHAR(10) NOT NULL,
            results_count INT NOT NULL,
            search_duration_ms DOUBLE PRECISION NOT NULL,
            query_expansion TEXT,
            suggested_terms TEXT[] DEFAULT ARRAY[]::TEXT[],
            partial BOOLEAN DEFAULT FALSE,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_documents_client
            ON documents(client_id);
        CREATE INDEX IF NOT EXISTS idx_chunks_client_document
            ON document_chunks(client_id, document_id);
        CREATE INDEX IF NOT EXISTS idx_chunks_content_fts
            ON document_chunks
            USING GIN (to_tsvector('{fts}', content));
        CREATE INDEX IF NOT EXISTS idx_chunks_embedding_hnsw
            ON document_chunks
            USING hnsw (embedding vector_cosine_ops);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            conn.commit()
            logger.info("Schema initialized successfully")

        self._execute_with_retry(_op, "initialize_schema")

    # =========================================================================
    # Documents and chunks
    # =========================================================================

    def upsert_document(
        self,
        document_id: str,
        client_id: str,
        name: str,
        document_type: str = "unknown",
        summary: str = "",
        extracted_text: str = "",
        confidence_score: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Insert or update a document row."""
        sql = """
        INSERT INTO documents
            (id, client_id, name, document_type, summary, extracted_text,
             confidence_score, metadata)
        VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET
            name = EXCLUDED.name,
            document_type = EXCLUDED.document_type,
            summary = EXCLUDED.summary,
            extracted_text = EXCLUDED.extracted_text,
            confidence_score = EXCLUDED.confidence_score,
            metadata = EXCLUDED.metadata
        """
        params = (
            document_id, client_id, name, document_type, summary,
            extracted_text, confidence_score, json.dumps(metadata or {}),
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
            conn.commit()

        self._execute_with_retry(_op, "upsert_document")

    def replace_document_chunks(
        self,
        document_id: str,
        client_id: str,
        chunks: list[Chunk],
        embeddings: list[list[float]],
    ) -> int:
        """
        Supersede a document's chunks with a new set, in one transaction.

        Old chunks are deleted, parents are inserted, then children are
        inserted pointing at their parent's new row id. Empty embeddings
        are stored as NULL.

        Args:
            document_id: Document the chunks belong to
            client_id: Owning tenant
            chunks: Chunker output (parents followed by their children)
            embeddings: One vector per chunk, aligned with ``chunks``

        Returns:
            Number of chunk rows inserted
        """
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"Mismatch: {len(chunks)} chunks, {len(embeddings)} embeddings"
            )

        from psycopg2.extras import execute_values

        parents = [(c, e) for c, e in zip(chunks, embeddings) if c.chunk_type == PARENT]
        children = [(c, e) for c, e in zip(chunks, embeddings) if c.chunk_type == CHILD]

        insert_sql = """
        INSERT INTO document_chunks
            (document_id, client_id, chunk_type, chunk_index, parent_chunk_id,
             content, char_start, char_end, page_number, section_heading,
             timestamp_start, timestamp_end, embedding)
        VALUES %s
        RETURNING id, chunk_index
        """
        template = (
            "(%s::uuid, %s::uuid, %s, %s, %s::uuid, %s, %s, %s, %s, %s, %s, %s, %s::vector)"
        )

        def _row(chunk: Chunk, embedding: list[float], parent_id: Optional[str]) -> tuple:
            return (
                document_id,
                client_id,
                chunk.chunk_type,
                chunk.chunk_index,
                parent_id,
                chunk.content,
                chunk.char_start,
                chunk.char_end,
                chunk.page_number,
                chunk.section_heading,
                chunk.timestamp_start,
                chunk.timestamp_end,
                embedding or None,
            )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM document_chunks WHERE document_id = %s::uuid AND client_id = %s::uuid",
                    (document_id, client_id),
                )
                parent_ids: dict[int, str] = {}
                if parents:
                    rows = execute_values(
                        cur,
                        insert_sql,
                        [_row(c, e, None) for c, e in parents],
                        template=template,
                        page_size=1000,
                        fetch=True,
                    )
                    for row in rows:
                        row_dict = dict(row)
                        parent_ids[row_dict["chunk_index"]] = str(row_dict["id"])

                if children:
                    values = []
                    for chunk, embedding in children:
                        if chunk.parent_index not in parent_ids:
                            raise ValueError(
                                f"Child chunk {chunk.chunk_index} references missing "
                                f"parent {chunk.parent_index}"
                            )
                        values.append(_row(chunk, embedding, parent_ids[chunk.parent_index]))
                    execute_values(cur, insert_sql, values, template=template, page_size=1000, fetch=True)
            conn.commit()
            logger.info(
                f"Replaced chunks for document {document_id}: "
                f"{len(parents)} parents, {len(children)} children"
            )
            return len(parents) + len(children)

        return self._execute_with_retry(_op, "replace_document_chunks")

    def delete_document_chunks(self, document_id: str, client_id: str) -> int:
        """Delete every chunk of a document. Returns the number removed."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM document_chunks WHERE document_id = %s::uuid AND client_id = %s::uuid",
                    (document_id, client_id),
                )
                deleted = cur.rowcount
            conn.commit()
            return deleted

        return self._execute_with_retry(_op, "delete_document_chunks")

    # =========================================================================
    # Search
    # =========================================================================

    @staticmethod
    def _document_filters(
        document_types: Optional[list[str]] = None,
        confidence_threshold: Optional[float] = None,
        date_range: Optional[DateRange] = None,
    ) -> tuple[str, list]:
        """Build extra WHERE conditions on the documents table (alias d)."""
        conditions = []
        params: list = []
        if document_types:
            conditions.append("d.document_type = ANY(%s)")
            params.append(list(document_types))
        if confidence_threshold is not None:
            conditions.append("d.confidence_score >= %s")
            params.append(confidence_threshold)
        if date_range is not None:
            if date_range.start is not None:
                conditions.append("d.created_at >= %s")
                params.append(date_range.start)
            if date_range.end is not None:
                conditions.append("d.created_at <= %s")
                params.append(date_range.end)
        sql = "".join(f" AND {c}" for c in conditions)
        return sql, params

    @staticmethod
    def _row_to_result(row) -> SearchResult:
        row_dict = dict(row)
        metadata = row_dict.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        metadata = {
            **metadata,
            "chunk_id": str(row_dict["chunk_id"]),
            "chunk_type": row_dict.get("chunk_type"),
            "page_number": row_dict.get("page_number"),
            "section_heading": row_dict.get("section_heading"),
            "timestamp_start": row_dict.get("timestamp_start"),
            "timestamp_end": row_dict.get("timestamp_end"),
        }
        return SearchResult(
            document_id=str(row_dict["document_id"]),
            document_name=row_dict.get("name") or "Unknown",
            document_type=row_dict.get("document_type") or "unknown",
            summary=row_dict.get("summary") or "",
            similarity_score=float(row_dict["score"]),
            extracted_text=row_dict.get("extracted_text") or "",
            metadata=metadata,
        )

    def keyword_search(
        self,
        client_id: str,
        query: str,
        limit: int = 20,
        document_types: Optional[list[str]] = None,
        confidence_threshold: Optional[float] = None,
        date_range: Optional[DateRange] = None,
    ) -> list[SearchResult]:
        """
        Full-text search using PostgreSQL ts_rank.

        Args:
            client_id: Tenant to search within
            query: Search query string (websearch syntax)
            limit: Maximum number of documents to return
            document_types: Optional document type filter
            confidence_threshold: Optional minimum document confidence score
            date_range: Optional document creation date window

        Returns:
            One SearchResult per matching document, best chunk first,
            scored by ts_rank
        """
        fts = self.config.fts_language
        where_extra, filter_params = self._document_filters(
            document_types, confidence_threshold, date_range,
        )

        sql = f"""
        SELECT r.*, d.name, d.document_type, d.summary, d.extracted_text, d.metadata
        FROM (
            SELECT
                c.id AS chunk_id,
                c.document_id,
                c.chunk_type,
                c.page_number,
                c.section_heading,
                c.timestamp_start,
                c.timestamp_end,
                ts_rank(to_tsvector(%s, c.content), websearch_to_tsquery(%s, %s)) AS score,
                ROW_NUMBER() OVER (
                    PARTITION BY c.document_id
                    ORDER BY ts_rank(to_tsvector(%s, c.content), websearch_to_tsquery(%s, %s)) DESC
                ) AS rn
            FROM document_chunks c
            JOIN documents d ON d.id = c.document_id
            WHERE c.client_id = %s::uuid
              AND to_tsvector(%s, c.content) @@ websearch_to_tsquery(%s, %s)
              {where_extra}
        ) r
        JOIN documents d ON d.id = r.document_id
        WHERE r.rn = 1
        ORDER BY r.score DESC
        LIMIT %s
        """
        params = (
            [fts, fts, query, fts, fts, query, client_id, fts, fts, query]
            + filter_params + [limit]
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [self._row_to_result(row) for row in rows]

        return self._execute_with_retry(_op, "keyword_search")

    def vector_search(
        self,
        client_id: str,
        query_embedding: list[float],
        limit: int = 20,
        similarity_threshold: float = 0.7,
        date_range: Optional[DateRange] = None,
    ) -> list[SearchResult]:
        """
        Semantic search using cosine similarity.

        Args:
            client_id: Tenant to search within
            query_embedding: Query embedding vector
            limit: Maximum number of documents to return
            similarity_threshold: Minimum similarity (0-1) for a chunk to match
            date_range: Optional document creation date window

        Returns:
            One SearchResult per matching document, scored by the similarity
            of its closest chunk
        """
        where_extra, filter_params = self._document_filters(date_range=date_range)

        sql = f"""
        SELECT r.*, d.name, d.document_type, d.summary, d.extracted_text, d.metadata
        FROM (
            SELECT
                c.id AS chunk_id,
                c.document_id,
                c.chunk_type,
                c.page_number,
                c.section_heading,
                c.timestamp_start,
                c.timestamp_end,
                1 - (c.embedding <=> %s::vector) AS score,
                ROW_NUMBER() OVER (
                    PARTITION BY c.document_id
                    ORDER BY c.embedding <=> %s::vector
                ) AS rn
            FROM document_chunks c
            JOIN documents d ON d.id = c.document_id
            WHERE c.client_id = %s::uuid
              AND c.embedding IS NOT NULL
              AND 1 - (c.embedding <=> %s::vector) >= %s
              {where_extra}
        ) r
        JOIN documents d ON d.id = r.document_id
        WHERE r.rn = 1
        ORDER BY r.score DESC
        LIMIT %s
        """
        params = (
            [query_embedding, query_embedding, client_id, query_embedding, similarity_threshold]
            + filter_params + [limit]
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [self._row_to_result(row) for row in rows]

        return self._execute_with_retry(_op, "vector_search")

    def get_document_embedding(self, document_id: str, client_id: str) -> Optional[dict]:
        """
        Reference embedding for a document: the mean of its parent chunk embeddings.

        Returns:
            {"embedding": [...], "summary": str}, or None when the document
            does not exist for this tenant or has no embedded chunks
        """
        sql = """
        SELECT d.summary, AVG(c.embedding)::text AS embedding
        FROM documents d
        JOIN document_chunks c ON c.document_id = d.id
        WHERE d.id = %s::uuid
          AND d.client_id = %s::uuid
          AND c.chunk_type = %s
          AND c.embedding IS NOT NULL
        GROUP BY d.id, d.summary
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id, client_id, PARENT))
                row = cur.fetchone()
            if not row or not row["embedding"]:
                return None
            return {
                "embedding": json.loads(row["embedding"]),
                "summary": row["summary"] or "",
            }

        return self._execute_with_retry(_op, "get_document_embedding")

    # =========================================================================
    # Analytics
    # =========================================================================

    def log_search_analytics(self, record: dict) -> None:
        """Persist one search analytics record."""
        sql = """
        INSERT INTO search_analytics
            (client_id, search_query, search_type, results_count,
             search_duration_ms, query_expansion, suggested_terms, partial)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            record.get("client_id"),
            record["query"],
            record["mode"],
            record["results_count"],
            record["duration_ms"],
            record.get("expanded_query"),
            record.get("suggested_terms") or [],
            record.get("partial", False),
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
            conn.commit()

        self._execute_with_retry(_op, "log_search_analytics")
