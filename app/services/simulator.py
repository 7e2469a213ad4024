"""Simulated caller: greetings and replies generated from the scenario prompt."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from app.core.settings import settings
from app.exceptions import UpstreamException
from app.services.llm import LLMConfig, get_llm_service

logger = logging.getLogger(__name__)

# Used for free practice without a scenario: the model plays whatever visitor the counselor describes
DEFAULT_PRACTICE_PROMPT = (
    "You are roleplaying a visitor contacting a crisis text line so a counselor can practise. "
    "Stay in character, respond the way a real person in distress would, keep replies short "
    "and never break character to give counseling advice yourself."
)

OPEN_PRACTICE_GREETING = (
    "What would you like to practice today? Give me a brief situation and I'll play the visitor."
)

_GREETING_INSTRUCTION = (
    "Begin the conversation. Write only your first message as the caller, one to three sentences."
)

_MOCK_GREETING = "Hi... I'm not really sure why I'm reaching out. It's been a rough week."
_MOCK_REPLY = "I don't know. It's just a lot right now, and I don't really have anyone to talk to."


def _use_mocks(service) -> bool:
    if service.is_available():
        return False
    if settings.llm_mocks_enabled:
        return True
    raise UpstreamException("Language model provider is not configured")


def _simulator_config(max_tokens: int) -> LLMConfig:
    return LLMConfig(
        temperature=0.8,
        max_tokens=max_tokens,
        timeout_seconds=settings.llm_timeout_seconds,
        model=settings.simulator_model if settings.llm_provider == "openai" else None,
    )


def generate_initial_greeting(scenario_prompt: str) -> str:
    """Opening message from the simulated caller for a new session."""
    service = get_llm_service()
    if _use_mocks(service):
        logger.warning("[simulator] no LLM provider configured; using mock greeting")
        return _MOCK_GREETING

    response = service.generate(scenario_prompt, _GREETING_INSTRUCTION, _simulator_config(300))
    if not response.success or not response.text:
        raise UpstreamException("Caller simulator failed to produce a greeting")
    return response.text


def generate_reply(scenario_prompt: Optional[str], history: List[Dict[str, str]]) -> str:
    """Next caller message given the live-attempt history.

    ``history`` holds ``{"role": "user"|"assistant", "content": ...}`` dicts in
    turn order, ending with the counselor's newest message.
    """
    service = get_llm_service()
    if _use_mocks(service):
        logger.warning("[simulator] no LLM provider configured; using mock reply")
        return _MOCK_REPLY

    response = service.chat(scenario_prompt or DEFAULT_PRACTICE_PROMPT, history, _simulator_config(500))
    if not response.success or not response.text:
        if response.timed_out:
            raise UpstreamException("Caller simulator timed out")
        raise UpstreamException("Caller simulator failed to respond")
    return response.text
