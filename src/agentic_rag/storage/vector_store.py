"""Vector store collaborators for the retrieval core.

The core only depends on the VectorStore protocol:
- similarity_search(query, k) -> [Chunk]
- similarity_search_with_score(query, k) -> [(Chunk, distance | None)]
- add(chunks)
- all_chunks(limit) -> [Chunk]   (used to build in-memory keyword indices)

Two adapters are provided:
1. InMemoryVectorStore: numpy cosine distance, handy for tests and small
   corpora that fit in memory.
2. QdrantVectorStore: local (in-process, persisted to disk) or server/cloud
   Qdrant. Qdrant reports cosine *similarity*; the adapter converts it to
   cosine distance (1 - similarity, range [0, 2]) so the score normalizer
   sees the same metric from every store.

Both adapters embed with an injected embedding service (anything with
embed/embed_batch) and run the blocking work in a worker thread so searches
from concurrent sub-queries do not block the event loop.
"""

import asyncio
import logging
import uuid
from typing import Any, Optional, Protocol, runtime_checkable

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.http import models as qdrant_models

from agentic_rag.core.config import RAGSettings, settings as default_settings
from agentic_rag.core.errors import CollaboratorError, InvalidConfigurationError
from agentic_rag.engine.models import Chunk

logger = logging.getLogger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Anything that can turn texts into vectors."""

    def embed(self, text: str) -> list[float]: ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


@runtime_checkable
class VectorStore(Protocol):
    """Read/append interface the retrievers consume."""

    async def similarity_search(self, query: str, k: int) -> list[Chunk]: ...

    async def similarity_search_with_score(
        self, query: str, k: int
    ) -> list[tuple[Chunk, Optional[float]]]: ...

    async def add(self, chunks: list[Chunk]) -> None: ...

    async def all_chunks(self, limit: int) -> list[Chunk]: ...


def _embed_query(embedder: Any, query: str) -> list[float]:
    embed_query = getattr(embedder, "embed_query", None)
    if callable(embed_query):
        return embed_query(query)
    return embedder.embed(query)


class InMemoryVectorStore:
    """Brute-force cosine search over chunks held in memory.

    Example:
        store = InMemoryVectorStore(EmbeddingService())
        await store.add(chunks)
        hits = await store.similarity_search_with_score("python memory", k=5)
    """

    def __init__(self, embedder: Embedder):
        self.embedder = embedder
        self._chunks: list[Chunk] = []
        self._matrix: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self._chunks)

    async def add(self, chunks: list[Chunk]) -> None:
        if not chunks:
            return
        vectors = await asyncio.to_thread(self.embedder.embed_batch, [c.text for c in chunks])
        new_rows = np.asarray(vectors, dtype=np.float64)
        if self._matrix is None:
            self._matrix = new_rows
        else:
            if new_rows.shape[1] != self._matrix.shape[1]:
                raise InvalidConfigurationError(
                    f"Embedding dimension {new_rows.shape[1]} does not match "
                    f"store dimension {self._matrix.shape[1]}"
                )
            self._matrix = np.vstack([self._matrix, new_rows])
        self._chunks.extend(chunks)
        logger.info(f"InMemoryVectorStore: added {len(chunks)} chunks (total={len(self._chunks)})")

    async def similarity_search_with_score(
        self, query: str, k: int
    ) -> list[tuple[Chunk, Optional[float]]]:
        if self._matrix is None or k <= 0:
            return []

        query_vector = np.asarray(
            await asyncio.to_thread(_embed_query, self.embedder, query), dtype=np.float64
        )

        norms = np.linalg.norm(self._matrix, axis=1) * np.linalg.norm(query_vector)
        with np.errstate(divide="ignore", invalid="ignore"):
            similarities = np.where(norms > 0, self._matrix @ query_vector / norms, 0.0)
        distances = 1.0 - similarities

        # Stable sort keeps insertion order for ties
        order = np.argsort(distances, kind="stable")[:k]
        return [(self._chunks[i], float(distances[i])) for i in order]

    async def similarity_search(self, query: str, k: int) -> list[Chunk]:
        return [chunk for chunk, _ in await self.similarity_search_with_score(query, k)]

    async def all_chunks(self, limit: int) -> list[Chunk]:
        return list(self._chunks[:limit])


def create_qdrant_client(settings: Optional[RAGSettings] = None) -> QdrantClient:
    """Create a Qdrant client for the configured deployment.

    Local file-based Qdrant only allows one client connection at a time,
    so hosts should create the client once and share it.
    """
    settings = settings or default_settings

    if settings.vector_db == "qdrant_cloud":
        settings.validate_vector_db_config()
        if settings.qdrant_cloud_api_key:
            client = QdrantClient(
                url=settings.qdrant_cloud_url,
                api_key=settings.qdrant_cloud_api_key,
            )
        else:
            # Self-hosted Qdrant (Docker) - no API key needed
            client = QdrantClient(url=settings.qdrant_cloud_url)
        logger.info(f"Connected to Qdrant server: {settings.qdrant_cloud_url}")
        return client

    qdrant_path = settings.get_absolute_qdrant_path()
    logger.info(f"Using local Qdrant at: {qdrant_path}")
    if not qdrant_path.exists():
        qdrant_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created qdrant_db directory: {qdrant_path}")
    return QdrantClient(path=str(qdrant_path))


class QdrantVectorStore:
    """Qdrant-backed vector store.

    Example:
        client = create_qdrant_client()
        store = QdrantVectorStore(client, EmbeddingService())
        await store.add(chunks)
        hits = await store.similarity_search_with_score("inflation outlook", k=10)
    """

    def __init__(
        self,
        client: QdrantClient,
        embedder: Embedder,
        collection_name: Optional[str] = None,
        settings: Optional[RAGSettings] = None,
    ):
        """Initialize the Qdrant store.

        Args:
            client: Qdrant client (see create_qdrant_client).
            embedder: Embedding service used for chunks and queries.
            collection_name: Collection to read/write. Defaults to config.
            settings: Settings for defaults and batch sizes.
        """
        self.settings = settings or default_settings
        self.client = client
        self.embedder = embedder
        self.collection_name = collection_name or self.settings.collection_name

        logger.info(f"QdrantVectorStore initialized: collection={self.collection_name}")

    # =========================================================================
    # Collection Management
    # =========================================================================

    def collection_exists(self) -> bool:
        return self.client.collection_exists(self.collection_name)

    def get_vector_size(self) -> Optional[int]:
        """Vector size of the existing collection (None if unknown)."""
        info = self.client.get_collection(self.collection_name)
        vectors_config = info.config.params.vectors
        if hasattr(vectors_config, "size"):
            return getattr(vectors_config, "size", None)
        if isinstance(vectors_config, dict):
            first_config = next(iter(vectors_config.values()), None)
            if first_config is not None:
                return getattr(first_config, "size", None)
        return None

    def _ensure_collection(self, dimension: int) -> None:
        """Create the collection, or check it matches the embedding model."""
        if not self.collection_exists():
            self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=qdrant_models.VectorParams(
                    size=dimension,
                    distance=qdrant_models.Distance.COSINE,
                ),
            )
            logger.info(f"Created collection '{self.collection_name}' (dimension={dimension})")
            return

        existing = self.get_vector_size()
        if existing is not None and existing != dimension:
            raise InvalidConfigurationError(
                f"Collection '{self.collection_name}' stores {existing}-dim vectors "
                f"but the embedding model produces {dimension}-dim vectors"
            )

    def delete_collection(self) -> bool:
        """Delete the collection if it exists."""
        if not self.collection_exists():
            logger.info(f"Collection '{self.collection_name}' does not exist")
            return False
        self.client.delete_collection(self.collection_name)
        logger.info(f"Deleted collection: {self.collection_name}")
        return True

    # =========================================================================
    # Indexing Operations
    # =========================================================================

    @staticmethod
    def _point_id(chunk: Chunk) -> str:
        # Qdrant ids must be unsigned ints or UUIDs
        return str(uuid.uuid5(uuid.NAMESPACE_URL, chunk.id))

    def _add_sync(self, chunks: list[Chunk]) -> None:
        vectors = self.embedder.embed_batch([c.text for c in chunks])
        self._ensure_collection(len(vectors[0]))

        batch_size = self.settings.embed_batch_size
        for start in range(0, len(chunks), batch_size):
            points = [
                qdrant_models.PointStruct(
                    id=self._point_id(chunk),
                    vector=list(vector),
                    payload={"chunk_id": chunk.id, "text": chunk.text, "metadata": chunk.metadata},
                )
                for chunk, vector in zip(
                    chunks[start:start + batch_size], vectors[start:start + batch_size]
                )
            ]
            self.client.upsert(collection_name=self.collection_name, points=points)

        logger.info(f"Upserted {len(chunks)} chunks into '{self.collection_name}'")

    async def add(self, chunks: list[Chunk]) -> None:
        if not chunks:
            return
        await asyncio.to_thread(self._add_sync, chunks)

    # =========================================================================
    # Search Operations
    # =========================================================================

    @staticmethod
    def _to_chunk(payload: Optional[dict], point_id: Any) -> Chunk:
        payload = payload or {}
        return Chunk(
            id=str(payload.get("chunk_id", point_id)),
            text=payload.get("text", ""),
            metadata=dict(payload.get("metadata") or {}),
        )

    def _search_sync(self, query: str, k: int) -> list[tuple[Chunk, Optional[float]]]:
        if not self.collection_exists():
            logger.warning(f"Collection '{self.collection_name}' does not exist")
            return []

        query_vector = _embed_query(self.embedder, query)
        response = self.client.query_points(
            collection_name=self.collection_name,
            query=list(query_vector),
            limit=k,
            with_payload=True,
        )
        # Cosine similarity -> cosine distance in [0, 2]
        return [
            (self._to_chunk(point.payload, point.id), 1.0 - point.score)
            for point in response.points
        ]

    async def similarity_search_with_score(
        self, query: str, k: int
    ) -> list[tuple[Chunk, Optional[float]]]:
        try:
            return await asyncio.to_thread(self._search_sync, query, k)
        except InvalidConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Qdrant search error: {e}")
            raise CollaboratorError(f"Qdrant search failed: {e}") from e

    async def similarity_search(self, query: str, k: int) -> list[Chunk]:
        return [chunk for chunk, _ in await self.similarity_search_with_score(query, k)]

    def _scroll_sync(self, limit: int) -> list[Chunk]:
        if not self.collection_exists():
            return []

        chunks: list[Chunk] = []
        offset = None
        while len(chunks) < limit:
            points, offset = self.client.scroll(
                collection_name=self.collection_name,
                limit=min(256, limit - len(chunks)),
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            chunks.extend(self._to_chunk(p.payload, p.id) for p in points)
            if offset is None:
                break
        return chunks

    async def all_chunks(self, limit: int) -> list[Chunk]:
        return await asyncio.to_thread(self._scroll_sync, limit)

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def get_stats(self) -> dict:
        """Get vector store statistics."""
        if not self.collection_exists():
            return {"exists": False, "collection_name": self.collection_name}

        info = self.client.get_collection(self.collection_name)
        return {
            "exists": True,
            "collection_name": self.collection_name,
            "points_count": getattr(info, "points_count", 0) or 0,
            "vector_size": self.get_vector_size(),
        }
