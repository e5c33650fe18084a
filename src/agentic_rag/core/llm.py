"""LLM service for the optional planning/evaluation collaborators.

Design decisions:
- Ollama (local): free, private, no rate limits, requires local setup
- Groq (cloud): free tier, fast inference, no GPU needed
- The retrieval core never requires an LLM; planners and evaluators only
  reach for this service when use_llm is enabled, and treat any failure
  here as "LLM unavailable"

Switching between providers:
    # In .env file:
    LLM_SERVICE=local    # Use Ollama
    LLM_SERVICE=groq     # Use Groq (requires GROQ_API_KEY)
"""

import logging
from typing import Optional

from llama_index.core.llms import LLM

from agentic_rag.core.config import RAGSettings, settings as default_settings
from agentic_rag.core.errors import InvalidConfigurationError

logger = logging.getLogger(__name__)


class LLMService:
    """Service for LLM interactions with multiple provider support.

    Supports:
    - local: Ollama (free, private, runs locally)
    - groq: Groq Cloud (free tier, fast inference)

    Example:
        service = LLMService()
        text = await service.acomplete("Decompose this query: ...")

        # Force specific provider
        service = LLMService(service_type="groq")
    """

    def __init__(
        self,
        service_type: Optional[str] = None,
        model_name: Optional[str] = None,
        llm: Optional[LLM] = None,
        settings: Optional[RAGSettings] = None,
    ):
        """Initialize the LLM service.

        Args:
            service_type: "local" (Ollama) or "groq". Defaults to config.
            model_name: Model name override. Defaults to config.
            llm: Pre-built llama-index LLM (skips provider construction).
            settings: Settings to read provider details from.
        """
        self.settings = settings or default_settings
        self.service_type = service_type or self.settings.llm_service
        self._llm: Optional[LLM] = llm

        if model_name:
            self.model_name = model_name
        elif self.service_type == "groq":
            self.model_name = self.settings.groq_model
        else:
            self.model_name = self.settings.llm_model

    @property
    def llm(self) -> LLM:
        """Get or create the LLM instance (lazy loading)."""
        if self._llm is None:
            self._llm = self._create_llm()
        return self._llm

    def _create_llm(self) -> LLM:
        """Create LLM instance based on service type."""
        if self.service_type == "groq":
            return self._create_groq_llm()
        return self._create_ollama_llm()

    def _create_ollama_llm(self) -> LLM:
        """Create Ollama LLM instance."""
        from llama_index.llms.ollama import Ollama

        logger.info(f"Initializing Ollama LLM: {self.model_name}")

        return Ollama(
            model=self.model_name,
            base_url=self.settings.ollama_base_url,
            request_timeout=self.settings.ollama_timeout,
            context_window=4096,
        )

    def _create_groq_llm(self) -> LLM:
        """Create Groq LLM instance."""
        from llama_index.llms.groq import Groq

        if not self.settings.groq_api_key:
            raise InvalidConfigurationError(
                "GROQ_API_KEY required for Groq LLM.\n"
                "Get free key at: https://console.groq.com/"
            )

        logger.info(f"Initializing Groq LLM: {self.model_name}")

        return Groq(
            model=self.model_name,
            api_key=self.settings.groq_api_key,
        )

    def complete(self, prompt: str) -> str:
        """Generate completion for a prompt."""
        response = self.llm.complete(prompt)
        return str(response)

    async def acomplete(self, prompt: str) -> str:
        """Generate completion for a prompt without blocking the event loop."""
        response = await self.llm.acomplete(prompt)
        return str(response)

    def is_available(self) -> bool:
        """Check if the LLM service is available.

        Returns:
            True if LLM can be reached, False otherwise.
        """
        try:
            if self.service_type == "local":
                import httpx

                response = httpx.get(
                    f"{self.settings.ollama_base_url}/api/tags",
                    timeout=5.0,
                )
                if response.status_code == 200:
                    models = response.json().get("models", [])
                    model_names = [m.get("name", "") for m in models]
                    return any(self.model_name in name for name in model_names)
                return False
            return bool(self.settings.groq_api_key)

        except Exception as e:
            logger.warning(f"LLM availability check failed: {e}")
            return False
