"""Core components: configuration, errors and the optional LLM service."""

from agentic_rag.core.config import RAGSettings, settings
from agentic_rag.core.errors import (
    AgenticRAGError,
    CollaboratorError,
    DecodeError,
    InvalidConfigurationError,
    NotInitializedError,
)
from agentic_rag.core.llm import LLMService

__all__ = [
    "RAGSettings",
    "settings",
    "AgenticRAGError",
    "CollaboratorError",
    "DecodeError",
    "InvalidConfigurationError",
    "NotInitializedError",
    "LLMService",
]
