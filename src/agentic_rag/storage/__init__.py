"""Storage collaborators: embeddings and vector stores."""

from agentic_rag.storage.embeddings import EmbeddingService
from agentic_rag.storage.vector_store import (
    Embedder,
    InMemoryVectorStore,
    QdrantVectorStore,
    VectorStore,
    create_qdrant_client,
)

__all__ = [
    "EmbeddingService",
    "Embedder",
    "InMemoryVectorStore",
    "QdrantVectorStore",
    "VectorStore",
    "create_qdrant_client",
]
