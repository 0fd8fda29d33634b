"""
Clarity Retrieval Pipeline

Turns extracted document and transcript text into a searchable index and
answers queries against it:
- Hierarchical parent/child chunking with page, section and timestamp provenance
- Order-preserving batch embeddings
- Hybrid search: query expansion, lexical + vector retrieval, merged ranking
  and highlighted snippets
- A per-tenant daily processing budget in front of the indexing path
"""

from .chunker import HierarchicalChunker
from .embeddings import EmbeddingService
from .query_expansion import QueryExpander
from .vector_store import DocumentStore
from .retriever import HybridSearchService
from .budget import ProcessingBudgetGovernor
from .indexer import DocumentIndexer

__all__ = [
    "HierarchicalChunker",
    "EmbeddingService",
    "QueryExpander",
    "DocumentStore",
    "HybridSearchService",
    "ProcessingBudgetGovernor",
    "DocumentIndexer",
]

__version__ = "0.1.0"
