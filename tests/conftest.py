"""Shared fixtures and fakes for the agentic_rag test suite."""

import asyncio
import re
import zlib
from typing import Optional

import pytest
import pytest_asyncio

from agentic_rag.core.config import RAGSettings
from agentic_rag.engine.models import Chunk


def make_chunk(chunk_id: str, text: str, **metadata) -> Chunk:
    return Chunk(id=chunk_id, text=text, metadata={"chunkId": chunk_id, **metadata})


class HashingEmbedder:
    """Deterministic bag-of-words embedder (no model download)."""

    def __init__(self, dimension: int = 256):
        self.dimension = dimension

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in re.findall(r"\w+", text.lower()):
            vector[zlib.crc32(token.encode()) % self.dimension] += 1.0
        return vector

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class StaticVectorStore:
    """Vector store returning preset (chunk, distance) hits for every query.

    Queries listed in fail_on raise RuntimeError; queries in slow_on sleep
    for `delay` seconds first.
    """

    def __init__(
        self,
        hits: list[tuple[Chunk, Optional[float]]],
        fail_on: Optional[set[str]] = None,
        slow_on: Optional[set[str]] = None,
        delay: float = 0.0,
        per_query: Optional[dict[str, list[tuple[Chunk, Optional[float]]]]] = None,
    ):
        self.hits = list(hits)
        self.fail_on = fail_on or set()
        self.slow_on = slow_on or set()
        self.delay = delay
        self.per_query = per_query or {}
        self.calls: list[tuple[str, int]] = []

    async def similarity_search_with_score(self, query: str, k: int):
        self.calls.append((query, k))
        if query in self.slow_on:
            await asyncio.sleep(self.delay)
        if query in self.fail_on:
            raise RuntimeError(f"store unavailable for '{query}'")
        return list(self.per_query.get(query, self.hits))[:k]

    async def similarity_search(self, query: str, k: int) -> list[Chunk]:
        return [chunk for chunk, _ in await self.similarity_search_with_score(query, k)]

    async def add(self, chunks: list[Chunk]) -> None:
        self.hits.extend((c, 1.0) for c in chunks)

    async def all_chunks(self, limit: int) -> list[Chunk]:
        return [chunk for chunk, _ in self.hits][:limit]


class FakeLLM:
    """LLM service stub: returns queued responses, raises queued exceptions."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def acomplete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise RuntimeError("no response configured")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def test_settings() -> RAGSettings:
    """Settings isolated from any local .env file."""
    return RAGSettings(_env_file=None)


@pytest.fixture
def corpus() -> list[Chunk]:
    return [
        make_chunk("c1", "Python uses reference counting and a garbage collector for memory management."),
        make_chunk("c2", "JavaScript runs on an event loop in the browser and in Node.js."),
        make_chunk("c3", "Rust guarantees memory safety through ownership and borrowing."),
        make_chunk("c4", "Go schedules goroutines onto operating system threads."),
        make_chunk("c5", "Haskell is a lazily evaluated purely functional language."),
    ]


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def static_store(corpus) -> StaticVectorStore:
    distances = [0.2, 0.4, 0.6, 0.8, 1.0]
    return StaticVectorStore(list(zip(corpus, distances)))


@pytest_asyncio.fixture
async def memory_store(corpus, embedder):
    from agentic_rag.storage.vector_store import InMemoryVectorStore

    store = InMemoryVectorStore(embedder)
    await store.add(corpus)
    return store
