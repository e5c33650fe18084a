"""In-memory and Qdrant vector store adapter tests."""

import pytest
from qdrant_client import QdrantClient

from agentic_rag.core.errors import InvalidConfigurationError
from agentic_rag.storage.vector_store import InMemoryVectorStore, QdrantVectorStore, VectorStore

from conftest import HashingEmbedder, make_chunk

QUERY = "rust ownership borrowing memory safety"


class TestInMemoryVectorStore:
    """numpy cosine-distance store"""

    @pytest.mark.asyncio
    async def test_nearest_first(self, memory_store):
        hits = await memory_store.similarity_search_with_score(QUERY, 3)

        assert hits[0][0].id == "c3"
        distances = [d for _, d in hits]
        assert distances == sorted(distances)
        assert all(0.0 <= d <= 2.0 for d in distances)

    @pytest.mark.asyncio
    async def test_similarity_search_returns_chunks(self, memory_store):
        chunks = await memory_store.similarity_search(QUERY, 2)
        assert [c.id for c in chunks][0] == "c3"
        assert len(chunks) == 2

    @pytest.mark.asyncio
    async def test_empty_store(self, embedder):
        store = InMemoryVectorStore(embedder)
        assert await store.similarity_search_with_score("python", 5) == []
        assert await store.all_chunks(10) == []

    @pytest.mark.asyncio
    async def test_all_chunks_and_len(self, memory_store):
        assert len(memory_store) == 5
        assert len(await memory_store.all_chunks(2)) == 2

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, memory_store):
        memory_store.embedder = HashingEmbedder(dimension=32)
        with pytest.raises(InvalidConfigurationError):
            await memory_store.add([make_chunk("c9", "Erlang actors")])

    def test_satisfies_protocol(self, memory_store):
        assert isinstance(memory_store, VectorStore)


class TestQdrantVectorStore:
    """Qdrant adapter against an in-process client"""

    @pytest.fixture
    def client(self):
        client = QdrantClient(":memory:")
        yield client
        client.close()

    @pytest.fixture
    def store(self, client, embedder, test_settings):
        return QdrantVectorStore(client, embedder, collection_name="test_chunks", settings=test_settings)

    @pytest.mark.asyncio
    async def test_add_creates_collection(self, store, corpus):
        assert not store.collection_exists()

        await store.add(corpus)

        assert store.collection_exists()
        assert store.get_vector_size() == 256
        assert store.get_stats()["points_count"] == 5

    @pytest.mark.asyncio
    async def test_search_returns_cosine_distance(self, store, corpus):
        await store.add(corpus)

        hits = await store.similarity_search_with_score(QUERY, 3)

        assert hits[0][0].id == "c3"
        assert hits[0][0].metadata["chunkId"] == "c3"
        distances = [d for _, d in hits]
        assert distances == sorted(distances)
        assert all(0.0 <= d <= 2.0 for d in distances)

    @pytest.mark.asyncio
    async def test_missing_collection_returns_nothing(self, store):
        assert await store.similarity_search_with_score("python", 5) == []
        assert await store.all_chunks(10) == []

    @pytest.mark.asyncio
    async def test_all_chunks(self, store, corpus):
        await store.add(corpus)

        chunks = await store.all_chunks(10)

        assert sorted(c.id for c in chunks) == ["c1", "c2", "c3", "c4", "c5"]
        assert len(await store.all_chunks(2)) == 2

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, store, corpus):
        await store.add(corpus)
        await store.add(corpus)
        assert store.get_stats()["points_count"] == 5

    @pytest.mark.asyncio
    async def test_embedding_dimension_mismatch(self, client, store, corpus, test_settings):
        await store.add(corpus)
        other = QdrantVectorStore(
            client, HashingEmbedder(dimension=32), collection_name="test_chunks", settings=test_settings
        )

        with pytest.raises(InvalidConfigurationError):
            await other.add([make_chunk("c9", "Erlang actors")])

    @pytest.mark.asyncio
    async def test_delete_collection(self, store, corpus):
        await store.add(corpus)
        assert store.delete_collection() is True
        assert store.delete_collection() is False
