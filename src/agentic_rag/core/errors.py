"""Exception hierarchy for the retrieval core.

Two families matter to callers:
- API misuse (NotInitializedError, InvalidConfigurationError): always
  propagated, never turned into an empty result.
- Collaborator failures (CollaboratorError, DecodeError): recovered locally
  wherever a fallback exists (heuristic plan, empty sub-query result).
"""


class AgenticRAGError(Exception):
    """Base class for all errors raised by agentic_rag."""


class NotInitializedError(AgenticRAGError, RuntimeError):
    """A retriever was used before its required setup completed."""


class InvalidConfigurationError(AgenticRAGError, ValueError):
    """Unknown strategy, bad weights, or a store/model mismatch."""


class CollaboratorError(AgenticRAGError):
    """The vector store, embedding service or LLM failed."""


class DecodeError(CollaboratorError):
    """An LLM response could not be decoded into the expected schema."""
