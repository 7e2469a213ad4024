"""
OpenAI LLM Provider

Implements the LLMProvider interface for OpenAI chat models.
"""

import os
import logging
from typing import Dict, List, Optional

from .base import LLMProvider, LLMConfig

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI GPT model provider."""

    PROVIDER_NAME = "openai"
    DEFAULT_MODEL = "gpt-4o"

    def _init_client(self, api_key: Optional[str] = None, **kwargs) -> None:
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client = None

    def _get_client(self):
        """Lazy load OpenAI client."""
        if self._client is None:
            if not self._api_key or self._api_key.startswith("your_"):
                raise ValueError("OpenAI API key not configured")

            from openai import OpenAI
            # Retries and the overall deadline are handled by the base class
            self._client = OpenAI(api_key=self._api_key, max_retries=0)

        return self._client

    def _call_api(
        self,
        messages: List[Dict[str, str]],
        config: LLMConfig,
        model: str,
        timeout: float,
    ) -> tuple[str, int, int]:
        client = self._get_client()

        kwargs = {
            "model": model,
            "messages": messages,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
        }
        if config.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = client.with_options(timeout=timeout).chat.completions.create(**kwargs)

        raw_text = (response.choices[0].message.content or "").strip()
        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0

        return raw_text, prompt_tokens, completion_tokens

    def is_available(self) -> bool:
        """Check if OpenAI is properly configured."""
        if not self._api_key or self._api_key.startswith("your_"):
            return False
        try:
            self._get_client()
            return True
        except Exception:
            return False
