"""
Google Gemini LLM Provider

Implements the LLMProvider interface for Gemini models via Vertex AI using the
google-genai SDK.
"""

import os
import logging
from typing import Dict, List, Optional

from .base import LLMProvider, LLMConfig

logger = logging.getLogger(__name__)


class GeminiProvider(LLMProvider):
    """Google Gemini model provider via Vertex AI."""

    PROVIDER_NAME = "gemini"
    DEFAULT_MODEL = "gemini-2.5-flash"

    def _init_client(
        self,
        project_id: Optional[str] = None,
        location: Optional[str] = None,
        **kwargs
    ) -> None:
        self._project_id = project_id or os.getenv("GOOGLE_CLOUD_PROJECT")
        self._location = location or os.getenv("GOOGLE_CLOUD_LOCATION", "us-central1")
        self._client = None

    def _get_client(self):
        """Lazy load Gemini client."""
        if self._client is None:
            if not self._project_id:
                raise ValueError("GOOGLE_CLOUD_PROJECT not configured")
            from google import genai
            from google.genai import types

            self._client = genai.Client(
                vertexai=True,
                project=self._project_id,
                location=self._location,
            )
            self._types = types

        return self._client

    def _call_api(
        self,
        messages: List[Dict[str, str]],
        config: LLMConfig,
        model: str,
        timeout: float,
    ) -> tuple[str, int, int]:
        client = self._get_client()
        types = self._types

        # System instruction is separate; assistant turns are "model" turns in Gemini
        system_content = "\n".join(m["content"] for m in messages if m["role"] == "system")
        contents = [
            types.Content(
                role="model" if m["role"] == "assistant" else "user",
                parts=[types.Part(text=m["content"])],
            )
            for m in messages
            if m["role"] != "system"
        ]

        gen_config = types.GenerateContentConfig(
            temperature=config.temperature,
            max_output_tokens=config.max_tokens,
            system_instruction=system_content or None,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )
        if config.json_mode:
            gen_config.response_mime_type = "application/json"

        response = client.models.generate_content(
            model=model,
            contents=contents,
            config=gen_config,
        )

        if getattr(response, "candidates", None):
            finish_reason = str(getattr(response.candidates[0], "finish_reason", "") or "").upper()
            if "MAX_TOKENS" in finish_reason:
                logger.warning(f"[gemini] response truncated (finish_reason={finish_reason})")
                raise ValueError("Response truncated due to max_tokens limit")

        raw_text = (response.text or "").strip()

        prompt_tokens = 0
        completion_tokens = 0
        usage = getattr(response, "usage_metadata", None)
        if usage:
            prompt_tokens = getattr(usage, "prompt_token_count", 0) or 0
            completion_tokens = getattr(usage, "candidates_token_count", 0) or 0

        return raw_text, prompt_tokens, completion_tokens

    def is_available(self) -> bool:
        try:
            self._get_client()
            return True
        except Exception as e:
            logger.debug(f"Gemini not available: {e}")
            return False
