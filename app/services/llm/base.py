"""
LLM Provider Base Interface

Abstract base class defining the contract for LLM providers.
All providers (OpenAI, Gemini) implement this interface. Callers get an
``LLMResponse`` back instead of an exception; the training services decide
whether a failed response becomes an ``UpstreamException``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional
import json
import logging
import re
import time

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Standardized response from any LLM provider."""
    success: bool
    text: str  # Raw text from LLM
    content: Dict[str, Any] = field(default_factory=dict)  # Parsed JSON when json_mode was requested

    latency_ms: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0

    provider: str = "unknown"
    model: str = "unknown"

    error: Optional[str] = None
    timed_out: bool = False

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class LLMConfig:
    """Configuration for LLM calls."""
    temperature: float = 0.2
    max_tokens: int = 2000
    json_mode: bool = False
    # Hard bound on the whole call, retries included
    timeout_seconds: float = 60.0
    max_retries: int = 2
    model: Optional[str] = None


class LLMTimeoutError(Exception):
    """Raised when the overall deadline for a call is exhausted."""


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    PROVIDER_NAME: str = "base"
    DEFAULT_MODEL: str = "unknown"

    def __init__(self, model: Optional[str] = None, **kwargs):
        self.model = model or self.DEFAULT_MODEL
        self._init_client(**kwargs)

    @abstractmethod
    def _init_client(self, **kwargs) -> None:
        """Initialize the provider's client. Implemented by subclasses."""

    @abstractmethod
    def _call_api(
        self,
        messages: List[Dict[str, str]],
        config: LLMConfig,
        model: str,
        timeout: float,
    ) -> tuple[str, int, int]:
        """Make one API call bounded by ``timeout`` seconds.

        Returns:
            Tuple of (raw_response_text, prompt_tokens, completion_tokens)
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the provider is properly configured and available."""

    def chat(
        self,
        system_prompt: str,
        history: List[Dict[str, str]],
        config: Optional[LLMConfig] = None,
    ) -> LLMResponse:
        """Continue a conversation: system prompt plus alternating user/assistant turns."""
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)
        return self._complete(messages, config or LLMConfig())

    def generate(
        self,
        system_prompt: str,
        user_content: str,
        config: Optional[LLMConfig] = None,
    ) -> LLMResponse:
        """Single-shot generation from a system prompt and one user message."""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]
        return self._complete(messages, config or LLMConfig())

    def _complete(self, messages: List[Dict[str, str]], config: LLMConfig) -> LLMResponse:
        model = config.model or self.model
        start_time = time.monotonic()
        try:
            raw_response, prompt_tokens, completion_tokens = self._call_with_retry(
                messages, config, model, deadline=start_time + config.timeout_seconds
            )
            content = self._parse_json(raw_response) if config.json_mode else {}
            latency_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                f"[llm] provider={self.PROVIDER_NAME} model={model} "
                f"latency_ms={latency_ms} tokens={prompt_tokens + completion_tokens} "
                f"(prompt={prompt_tokens}, completion={completion_tokens})"
            )
            return LLMResponse(
                success=True,
                text=raw_response,
                content=content,
                latency_ms=latency_ms,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                provider=self.PROVIDER_NAME,
                model=model,
            )
        except Exception as e:
            latency_ms = int((time.monotonic() - start_time) * 1000)
            timed_out = isinstance(e, LLMTimeoutError) or "timeout" in str(e).lower() or "timed out" in str(e).lower()
            logger.error(
                f"[llm] provider={self.PROVIDER_NAME} model={model} "
                f"latency_ms={latency_ms} timed_out={timed_out} error={e}"
            )
            return LLMResponse(
                success=False,
                text="",
                latency_ms=latency_ms,
                provider=self.PROVIDER_NAME,
                model=model,
                error=str(e),
                timed_out=timed_out,
            )

    def _call_with_retry(
        self,
        messages: List[Dict[str, str]],
        config: LLMConfig,
        model: str,
        deadline: float,
    ) -> tuple[str, int, int]:
        """Call API with exponential backoff, never running past ``deadline``."""
        last_error: Optional[Exception] = None
        delay = 0.6

        for attempt in range(config.max_retries + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                if attempt > 0:
                    logger.info(f"[llm] retry attempt {attempt + 1}/{config.max_retries + 1}")
                return self._call_api(messages, config, model, timeout=remaining)
            except Exception as e:
                last_error = e
                error_msg = str(e).lower()
                retryable = any(x in error_msg for x in [
                    "rate limit", "429", "quota", "timeout", "timed out", "503", "502", "connection"
                ])
                if not retryable:
                    raise
                if time.monotonic() + delay >= deadline:
                    break
                time.sleep(delay)
                delay *= 2

        if last_error is None or time.monotonic() >= deadline:
            raise LLMTimeoutError(
                f"LLM call exceeded {config.timeout_seconds:.0f}s deadline"
                + (f" (last error: {last_error})" if last_error else "")
            )
        raise last_error

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """Parse JSON from LLM response with fallback strategies."""
        if not content:
            raise ValueError("Empty response from LLM")

        text = content.strip()

        # Remove markdown code fences if present
        if text.startswith("```"):
            text = re.sub(r"^```[a-zA-Z0-9_-]*\n?", "", text)
            text = re.sub(r"\n?```\s*$", "", text)

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            logger.debug(f"Direct JSON parse failed: {e}")

        # Extract the outermost object
        start = text.find('{')
        end = text.rfind('}')
        if start != -1 and end > start:
            candidate = text[start:end + 1]
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                # Trailing commas are the most common model slip
                try:
                    return json.loads(re.sub(r",\s*([}\]])", r"\1", candidate))
                except json.JSONDecodeError as e:
                    logger.debug(f"Lenient JSON parse failed: {e}")

        truncated = text[:500] + "..." if len(text) > 500 else text
        logger.error(f"All JSON parse strategies failed. Content preview: {truncated}")
        raise ValueError("Could not parse JSON from LLM response")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model={self.model})"
