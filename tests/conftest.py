"""
Shared fixtures and test utilities for the Clarity retrieval tests.

Provides fake provider clients, mock services, an in-memory document store
and sample data so that all tests run without API keys, databases, or
external network access.
"""

import sys
import hashlib
from pathlib import Path
from types import SimpleNamespace
from datetime import date

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

CLIENT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_CLIENT_ID = "00000000-0000-0000-0000-000000000002"

# ---------------------------------------------------------------------------
# Sample document text
# ---------------------------------------------------------------------------
SAMPLE_DOCUMENT = (
    "This Residential Lease Agreement is made between Harbor Properties LLC and Dana Reyes. "
    "The tenant shall pay monthly rent of $2,400 on the first day of each month. "
    "A security deposit of $4,800 is due at signing! "
    "Does the landlord maintain the roof and plumbing? "
    "Yes, the landlord is responsible for structural repairs. "
    "Either party may terminate this lease with sixty days written notice. "
    "Late payments accrue a fee of five percent of the monthly rent. "
    "The tenant may not sublet the premises without prior written consent. "
    "This agreement is governed by the laws of the State of Oregon."
)


def build_text(sentence_count: int, sentence_length: int = 80) -> str:
    """Deterministic text of numbered sentences, each exactly sentence_length chars."""
    sentences = []
    for i in range(sentence_count):
        head = f"Clause {i} obliges the parties"
        filler = "x" * max(0, sentence_length - len(head) - 2)
        sentences.append(f"{head} {filler}."[:sentence_length - 1] + ".")
    return " ".join(sentences)


@pytest.fixture
def sample_document_text():
    """Return the sample lease text."""
    return SAMPLE_DOCUMENT


@pytest.fixture
def long_document_text():
    """Roughly 24 000 chars: several parents, each with children."""
    return build_text(300)


@pytest.fixture
def chunker():
    """Return a default HierarchicalChunker."""
    from execution.clarity_rag.chunker import HierarchicalChunker
    return HierarchicalChunker()


# ---------------------------------------------------------------------------
# Fake OpenAI clients
# ---------------------------------------------------------------------------

class FakeEmbeddingsClient:
    """
    Stands in for openai.OpenAI on the embeddings endpoint.

    ``vector_for`` maps an input string to its vector. ``failures`` is the
    number of initial calls that raise before calls start succeeding.
    """

    def __init__(self, vector_for=None, failures: int = 0, reverse_order: bool = False):
        self.vector_for = vector_for or (lambda text: [float(len(text)), 1.0])
        self.failures = failures
        self.reverse_order = reverse_order
        self.calls: list[list[str]] = []
        self.embeddings = SimpleNamespace(create=self._create)

    def _create(self, model, input):
        self.calls.append(list(input))
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("provider unavailable")
        data = [
            SimpleNamespace(index=i, embedding=self.vector_for(text))
            for i, text in enumerate(input)
        ]
        if self.reverse_order:
            data = list(reversed(data))
        return SimpleNamespace(data=data)


class FakeChatClient:
    """Stands in for openai.OpenAI on the chat completions endpoint."""

    def __init__(self, content=None, error: Exception = None):
        self.content = content
        self.error = error
        self.calls: list[dict] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture
def fake_embeddings_client():
    return FakeEmbeddingsClient


@pytest.fixture
def fake_chat_client():
    return FakeChatClient


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service that never calls external APIs."""

    def __init__(self, dimensions=8):
        self._dimensions = dimensions
        self.texts_seen: list[str] = []

    def embed_text(self, text):
        return self.embed_batch([text])[0]

    def embed_batch(self, texts):
        return self.embed_batch_detailed(texts).vectors

    def embed_batch_detailed(self, texts):
        from execution.clarity_rag.embeddings import EmbeddingBatchResult
        self.texts_seen.extend(texts)
        result = EmbeddingBatchResult(vectors=[])
        for i, text in enumerate(texts):
            if not text or not text.strip():
                result.vectors.append([])
                result.skipped_indices.append(i)
            else:
                result.vectors.append(self._deterministic_embedding(text))
        return result

    def _deterministic_embedding(self, text):
        h = hashlib.sha256(text.encode()).hexdigest()
        seed = int(h[:8], 16)
        return [((seed + i) % 1000) / 1000.0 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


# ---------------------------------------------------------------------------
# Mock document store (no database needed)
# ---------------------------------------------------------------------------

class MockDocumentStore:
    """In-memory stand-in for DocumentStore."""

    def __init__(self):
        self.documents: dict[str, dict] = {}
        self.chunks: dict[str, list] = {}  # document_id -> [(chunk, embedding)]
        self.analytics: list[dict] = []
        self.vector_results: list = []
        self.keyword_calls: list[dict] = []
        self.vector_calls: list[dict] = []

    def upsert_document(self, document_id, client_id, name, document_type="unknown",
                        summary="", extracted_text="", confidence_score=None, metadata=None):
        self.documents[document_id] = {
            "id": document_id, "client_id": client_id, "name": name,
            "document_type": document_type, "summary": summary,
            "extracted_text": extracted_text, "confidence_score": confidence_score,
            "metadata": metadata or {},
        }

    def replace_document_chunks(self, document_id, client_id, chunks, embeddings):
        if len(chunks) != len(embeddings):
            raise ValueError("Mismatch")
        self.chunks[document_id] = list(zip(chunks, embeddings))
        return len(chunks)

    def delete_document_chunks(self, document_id, client_id):
        return len(self.chunks.pop(document_id, []))

    def keyword_search(self, client_id, query, limit=20, document_types=None,
                       confidence_threshold=None, date_range=None):
        from execution.clarity_rag.vector_store import SearchResult
        self.keyword_calls.append({"client_id": client_id, "query": query, "limit": limit})
        words = [w for w in query.lower().split() if w]
        results = []
        for doc in self.documents.values():
            if doc["client_id"] != client_id:
                continue
            if document_types and doc["document_type"] not in document_types:
                continue
            if confidence_threshold is not None and (doc["confidence_score"] or 0) < confidence_threshold:
                continue
            text = doc["extracted_text"].lower()
            hits = sum(1 for w in words if w in text)
            if hits:
                results.append(SearchResult(
                    document_id=doc["id"], document_name=doc["name"],
                    document_type=doc["document_type"], summary=doc["summary"],
                    similarity_score=hits / 10.0, extracted_text=doc["extracted_text"],
                ))
        results.sort(key=lambda r: r.similarity_score, reverse=True)
        return results[:limit]

    def vector_search(self, client_id, query_embedding, limit=20,
                      similarity_threshold=0.7, date_range=None):
        from dataclasses import replace
        self.vector_calls.append({
            "client_id": client_id, "limit": limit,
            "similarity_threshold": similarity_threshold,
            "query_embedding": query_embedding,
        })
        hits = [r for r in self.vector_results if r.similarity_score >= similarity_threshold]
        return [replace(r, metadata=dict(r.metadata)) for r in hits[:limit]]

    def get_document_embedding(self, document_id, client_id):
        doc = self.documents.get(document_id)
        if doc is None or doc["client_id"] != client_id:
            return None
        vectors = [e for c, e in self.chunks.get(document_id, []) if c.is_parent and e]
        if not vectors:
            return None
        mean = [sum(values) / len(vectors) for values in zip(*vectors)]
        return {"embedding": mean, "summary": doc["summary"]}

    def log_search_analytics(self, record):
        self.analytics.append(record)


@pytest.fixture
def mock_document_store():
    return MockDocumentStore()


@pytest.fixture
def make_result():
    """Factory for SearchResult objects."""
    from execution.clarity_rag.vector_store import SearchResult

    def _make(document_id, score, text="", document_type="contract", summary="", name=None):
        return SearchResult(
            document_id=document_id,
            document_name=name or f"{document_id}.pdf",
            document_type=document_type,
            summary=summary,
            similarity_score=score,
            extracted_text=text,
        )

    return _make


# ---------------------------------------------------------------------------
# Budget helpers
# ---------------------------------------------------------------------------

class FixedClock:
    """Callable clock returning a settable date."""

    def __init__(self, day=date(2024, 3, 1)):
        self.day = day

    def __call__(self):
        return self.day


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def governor(clock):
    from execution.clarity_rag.budget import ProcessingBudgetGovernor
    return ProcessingBudgetGovernor(today=clock)


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_budget_governor_singleton():
    """Reset the global ProcessingBudgetGovernor between tests."""
    import execution.clarity_rag.budget as budget_mod
    budget_mod._governor = None
    yield
    budget_mod._governor = None


@pytest.fixture(autouse=True)
def reset_search_analytics_singleton():
    """Reset the global SearchAnalyticsRecorder between tests."""
    import execution.clarity_rag.analytics as analytics_mod
    analytics_mod._recorder = None
    yield
    analytics_mod._recorder = None
