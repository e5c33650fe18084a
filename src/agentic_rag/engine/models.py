"""Value types shared by retrievers and the orchestrator."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

# Chunks without a stable id are identified by this many leading characters
DEDUP_PREFIX_LENGTH = 100


class RetrievalStrategy(str, Enum):
    """Retriever implementations the orchestrator can dispatch to."""

    HYBRID = "hybrid"
    VECTOR = "vector"
    ENSEMBLE = "ensemble"
    BM25 = "bm25"


@dataclass(frozen=True)
class Chunk:
    """A pre-embedded text chunk supplied by the host."""

    id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievalResult:
    """A single retrieval result with metadata."""

    chunk: Chunk
    score: float
    source_strategy: RetrievalStrategy
    sub_query: Optional[str] = None
    explanation: Optional[str] = None

    # Detailed scores for hybrid search
    vector_score: float = 0.0
    keyword_score: float = 0.0

    @property
    def text(self) -> str:
        return self.chunk.text

    @property
    def metadata(self) -> dict[str, Any]:
        return self.chunk.metadata


def dedup_key(chunk: Chunk) -> str:
    """Identity used to collapse duplicate chunks.

    The stable chunk id from metadata wins; otherwise the first 100
    characters of the text stand in for it.
    """
    chunk_id = chunk.metadata.get("chunkId")
    if chunk_id is None:
        chunk_id = chunk.metadata.get("chunk_id")
    if chunk_id is not None:
        return str(chunk_id)
    return chunk.text[:DEDUP_PREFIX_LENGTH]
