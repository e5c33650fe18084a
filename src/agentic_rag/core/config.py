"""Configuration settings for the agentic retrieval core.

Design decisions:
- pydantic-settings for type-safe configuration with .env file support
- Retrieval knobs (weights, thresholds, iteration budget) live next to the
  infrastructure settings for Qdrant, embeddings and the optional LLM
- Settings are read-only during a query; components take an explicit
  settings object and fall back to the module-level default
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentic_rag.core.errors import InvalidConfigurationError


class RAGSettings(BaseSettings):
    """Agentic RAG configuration with .env file support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Orchestrator
    top_k: int = Field(default=5, ge=1)
    retrieval_strategy: Literal["hybrid", "vector", "ensemble", "bm25"] = "hybrid"
    enable_iterative_refinement: bool = True
    max_iterations: int = Field(default=3, ge=1)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    sub_query_timeout: Optional[float] = Field(default=None, gt=0)

    # Planning
    max_sub_queries: int = Field(default=3, ge=1)
    use_llm: bool = False

    # Hybrid fusion (weighted sum of normalized scores)
    hybrid_vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    hybrid_keyword_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    min_similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    keyword_boosting: bool = True

    # Ensemble fusion (reciprocal rank fusion)
    ensemble_vector_weight: float = Field(default=0.5, ge=0.0)
    ensemble_bm25_weight: float = Field(default=0.5, ge=0.0)

    # Keyword extraction
    extra_stop_words: list[str] = Field(default_factory=list)
    min_keyword_length: int = Field(default=3, ge=1)

    # In-memory keyword indices are built from at most this many chunks
    corpus_fetch_limit: int = Field(default=10000, ge=1)

    # Vector DB switching
    vector_db: Literal["local", "qdrant_cloud"] = "local"
    qdrant_path: Path = Path("./qdrant_db")
    qdrant_cloud_url: str = ""
    qdrant_cloud_api_key: str = ""
    collection_name: str = "knowledge_base"

    # Embeddings
    embed_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embed_batch_size: int = Field(default=32, ge=1)

    # LLM switching (only used when use_llm is enabled)
    llm_service: Literal["local", "groq"] = "local"
    llm_model: str = "llama3.2:3b"  # Ollama model
    groq_model: str = "llama-3.1-70b-versatile"  # Groq model
    groq_api_key: str = ""
    ollama_base_url: str = "http://localhost:11434"
    ollama_timeout: float = 120.0

    def get_absolute_qdrant_path(self) -> Path:
        """Get absolute path to qdrant_db, resolving relative paths."""
        if self.qdrant_path.is_absolute():
            return self.qdrant_path
        return self.qdrant_path.resolve()

    def validate_weights(self) -> None:
        """Validate hybrid fusion weights.

        Hybrid scores are a weighted sum of two [0,1] scores, so the weights
        must not add up to more than 1 for results to stay in [0,1].
        """
        total = self.hybrid_vector_weight + self.hybrid_keyword_weight
        if total > 1.0 + 1e-9:
            raise InvalidConfigurationError(
                f"hybrid_vector_weight + hybrid_keyword_weight must be <= 1 (got {total:.3f})"
            )

    def validate_llm_config(self) -> None:
        """Validate LLM configuration."""
        if self.llm_service == "groq" and not self.groq_api_key:
            raise InvalidConfigurationError("GROQ_API_KEY required when using Groq")

    def validate_vector_db_config(self) -> None:
        """Validate vector DB configuration."""
        if self.vector_db == "qdrant_cloud" and not self.qdrant_cloud_url:
            raise InvalidConfigurationError("QDRANT_CLOUD_URL required for Qdrant Cloud")


settings = RAGSettings()
