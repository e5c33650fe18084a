"""Embedding service using HuggingFace models.

Design decisions:
- Use HuggingFace sentence-transformers for FREE local embeddings
- Model: all-MiniLM-L6-v2 (384 dimensions, fast, good quality)
- Lazy loading per instance; hosts share one service by passing it to
  every vector store that needs it (no process-wide cache)

The retrieval core never calls this service directly. Vector store
adapters use it to embed chunks on add() and queries on search.
"""

import logging
from typing import Optional

from llama_index.embeddings.huggingface import HuggingFaceEmbedding

from agentic_rag.core.config import RAGSettings, settings as default_settings

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Service for generating text embeddings using HuggingFace models.

    Example:
        service = EmbeddingService()

        # Single text
        vector = service.embed("What is machine learning?")
        print(f"Dimension: {len(vector)}")  # 384

        # Batch processing
        vectors = service.embed_batch(["text1", "text2", "text3"])
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        settings: Optional[RAGSettings] = None,
    ):
        """Initialize the embedding service.

        Args:
            model_name: HuggingFace model name. Default: all-MiniLM-L6-v2
            settings: Settings providing model name and batch size.
        """
        self.settings = settings or default_settings
        self.model_name = model_name or self.settings.embed_model
        self._model: Optional[HuggingFaceEmbedding] = None
        self._dimension: Optional[int] = None

    @property
    def model(self) -> HuggingFaceEmbedding:
        """Get or create the embedding model."""
        if self._model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = HuggingFaceEmbedding(
                model_name=self.model_name,
                embed_batch_size=self.settings.embed_batch_size,
            )
            logger.info("Embedding model loaded successfully")
        return self._model

    def embed(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        return self.model.get_text_embedding(text)

    def embed_query(self, query: str) -> list[float]:
        """Generate embedding for a query (some models embed queries differently)."""
        return self.model.get_query_embedding(query)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts (batch processing)."""
        return self.model.get_text_embedding_batch(texts)

    @property
    def dimension(self) -> int:
        """Embedding dimension (computed once from a probe embedding)."""
        if self._dimension is None:
            self._dimension = len(self.embed("test"))
        return self._dimension
