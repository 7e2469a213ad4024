"""
LLM Provider Factory

Creates and manages LLM provider instances based on configuration.
Supports optional fallback from the primary to the secondary provider.
"""

import logging
from typing import Dict, List, Optional, Type
from enum import Enum

from app.core.settings import settings
from .base import LLMProvider, LLMResponse, LLMConfig
from .openai_provider import OpenAIProvider
from .gemini_provider import GeminiProvider

logger = logging.getLogger(__name__)


class LLMProviderType(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    GEMINI = "gemini"


PROVIDER_REGISTRY: Dict[str, Type[LLMProvider]] = {
    LLMProviderType.OPENAI: OpenAIProvider,
    LLMProviderType.GEMINI: GeminiProvider,
}


class LLMService:
    """
    LLM service with provider selection and optional fallback.

    Configuration via settings/environment:
    - LLM_PROVIDER: primary provider ('openai' or 'gemini', default: 'openai')
    - LLM_MODEL: model name (optional, uses provider default)
    - LLM_FALLBACK_ENABLED: fall back to the other provider (default: false)

    The fallback only runs when the primary failed quickly: a timed-out
    primary has already used the caller's deadline.
    """

    def __init__(
        self,
        primary_provider: Optional[str] = None,
        primary_model: Optional[str] = None,
        fallback_enabled: Optional[bool] = None,
        **kwargs
    ):
        self._primary_type = LLMProviderType(primary_provider or settings.llm_provider)
        self._model = primary_model or settings.llm_model
        self._fallback_enabled = (
            fallback_enabled if fallback_enabled is not None else settings.llm_fallback_enabled
        )
        self._kwargs = kwargs

        self._primary: Optional[LLMProvider] = None
        self._fallback: Optional[LLMProvider] = None

        logger.info(
            f"[llm_service] initialized: primary={self._primary_type.value} "
            f"model={self._model or 'default'} fallback={self._fallback_enabled}"
        )

    @property
    def primary_provider(self) -> LLMProvider:
        if self._primary is None:
            provider_class = PROVIDER_REGISTRY[self._primary_type]
            self._primary = provider_class(model=self._model, **self._kwargs)
        return self._primary

    @property
    def fallback_provider(self) -> Optional[LLMProvider]:
        if not self._fallback_enabled:
            return None
        if self._fallback is None:
            fallback_type = (
                LLMProviderType.OPENAI
                if self._primary_type == LLMProviderType.GEMINI
                else LLMProviderType.GEMINI
            )
            self._fallback = PROVIDER_REGISTRY[fallback_type]()
        return self._fallback

    def chat(
        self,
        system_prompt: str,
        history: List[Dict[str, str]],
        config: Optional[LLMConfig] = None,
    ) -> LLMResponse:
        return self._dispatch("chat", system_prompt, history, config)

    def generate(
        self,
        system_prompt: str,
        user_content: str,
        config: Optional[LLMConfig] = None,
    ) -> LLMResponse:
        return self._dispatch("generate", system_prompt, user_content, config)

    def _dispatch(self, method: str, system_prompt, payload, config: Optional[LLMConfig]) -> LLMResponse:
        response = getattr(self.primary_provider, method)(system_prompt, payload, config)
        if response.success:
            return response

        logger.warning(f"[llm_service] primary provider failed: {response.error}")
        fallback = self.fallback_provider
        if fallback is None or response.timed_out:
            return response

        logger.info(f"[llm_service] attempting fallback to {fallback.PROVIDER_NAME}")
        # The fallback runs on its own default model
        fallback_config = None
        if config is not None:
            fallback_config = LLMConfig(**{**config.__dict__, "model": None})
        fallback_response = getattr(fallback, method)(system_prompt, payload, fallback_config)
        if fallback_response.success:
            logger.info(f"[llm_service] fallback succeeded via {fallback_response.provider}")
            return fallback_response
        return response

    def is_available(self) -> bool:
        """Check if at least one provider is available."""
        try:
            if self.primary_provider.is_available():
                return True
        except Exception:
            pass
        fallback = self.fallback_provider
        if fallback is not None:
            try:
                return fallback.is_available()
            except Exception:
                return False
        return False


_service_instance: Optional[LLMService] = None


def get_llm_service(**kwargs) -> LLMService:
    """Get or create the default LLM service instance."""
    global _service_instance

    if _service_instance is None or kwargs:
        _service_instance = LLMService(**kwargs)

    return _service_instance


def reset_llm_service() -> None:
    """Reset the singleton instance (useful for testing)."""
    global _service_instance
    _service_instance = None
