"""
LLM Service Module

Unified interface over the language-model providers used for the simulated
caller, transcript scoring and post-session analysis.

Configuration:
- LLM_PROVIDER: primary provider ('openai' or 'gemini', default: 'openai')
- LLM_MODEL: specific model to use (optional, uses provider default)
- LLM_FALLBACK_ENABLED: enable fallback to the secondary provider
- LLM_TIMEOUT_SECONDS: hard bound per call, retries included

For OpenAI:
- OPENAI_API_KEY

For Gemini (Vertex AI):
- GOOGLE_CLOUD_PROJECT, GOOGLE_CLOUD_LOCATION

Usage:
    from app.services.llm import get_llm_service, LLMConfig

    service = get_llm_service()
    response = service.chat(
        system_prompt=scenario.prompt,
        history=[{"role": "user", "content": "Hi, this is the crisis line."}],
        config=LLMConfig(temperature=0.8, timeout_seconds=30),
    )
    if response.success:
        print(response.text)
"""

from .base import LLMProvider, LLMResponse, LLMConfig, LLMTimeoutError
from .openai_provider import OpenAIProvider
from .gemini_provider import GeminiProvider
from .factory import (
    LLMService,
    LLMProviderType,
    get_llm_service,
    reset_llm_service,
    PROVIDER_REGISTRY,
)

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LLMConfig",
    "LLMTimeoutError",
    "OpenAIProvider",
    "GeminiProvider",
    "LLMService",
    "LLMProviderType",
    "get_llm_service",
    "reset_llm_service",
    "PROVIDER_REGISTRY",
]
