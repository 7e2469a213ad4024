"""Transcript scoring via the language-model collaborator.

The evaluator returns a JSON object which is validated into ``ScoringResult``
before anything is persisted. Malformed output, provider failures and
timeouts all surface as ``UpstreamException`` so the caller may retry.
"""
from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from app.core.settings import settings
from app.exceptions import UpstreamException
from app.services.llm import LLMConfig, get_llm_service

logger = logging.getLogger(__name__)

SPEAKER_LABELS = {"user": "Counselor", "assistant": "Caller"}


class ScoredFlag(BaseModel):
    type: str
    severity: str = "info"
    details: str

    @field_validator("severity")
    @classmethod
    def normalize_severity(cls, v: str) -> str:
        v = (v or "info").strip().lower()
        return v if v in {"info", "warning", "critical"} else "info"


class ScoringResult(BaseModel):
    overall_score: float = Field(ge=0, le=100)
    grade: Optional[str] = None
    feedback: str
    strengths: List[str] = []
    areas_to_improve: List[str] = []
    flags: List[ScoredFlag] = []
    model: Optional[str] = None
    raw_response: Optional[str] = None

    @field_validator("overall_score", mode="before")
    @classmethod
    def clamp_score(cls, v):
        try:
            v = float(v)
        except (TypeError, ValueError):
            raise ValueError("overall_score must be numeric")
        return max(0.0, min(100.0, v))


def format_transcript(turns: List[Dict[str, str]]) -> str:
    """Render turns as ``Counselor: ...`` / ``Caller: ...`` lines."""
    return "\n".join(
        f"{SPEAKER_LABELS.get(t['role'], t['role'].title())}: {t['content']}" for t in turns
    )


def _build_system_prompt(scenario_title: str, scenario_description: Optional[str],
                         evaluator_context: Optional[str]) -> str:
    context = [f"Scenario: {scenario_title}"]
    if scenario_description:
        context.append(f"Description: {scenario_description}")
    if evaluator_context:
        context.append(f"Evaluator guidance:\n{evaluator_context}")
    return (
        "You are an expert evaluator of crisis counselor training sessions. "
        "The counselor is practising against a simulated caller.\n\n"
        + "\n".join(context)
        + "\n\nRespond with a JSON object with keys: "
        '"overall_score" (0-100 number), "grade" (A-F), "feedback" (markdown evaluation), '
        '"strengths" (list of strings), "areas_to_improve" (list of strings), '
        '"flags" (list of {"type", "severity": info|warning|critical, "details"} for '
        "safety or compliance concerns; empty when none)."
    )


def _mock_scoring(turns: List[Dict[str, str]]) -> ScoringResult:
    counselor_turns = [t for t in turns if t["role"] == "user"]
    score = min(100.0, 50.0 + 10.0 * len(counselor_turns))
    return ScoringResult(
        overall_score=score,
        grade="B" if score >= 80 else "C",
        feedback="Mock evaluation: no language model provider is configured.",
        strengths=["Engaged with the caller"] if counselor_turns else [],
        areas_to_improve=["Explore safety planning earlier"],
        model="mock",
    )


def score_transcript(
    turns: List[Dict[str, str]],
    scenario_title: str,
    scenario_description: Optional[str] = None,
    evaluator_context: Optional[str] = None,
) -> ScoringResult:
    """Score one attempt's transcript. Blocks for at most LLM_TIMEOUT_SECONDS."""
    service = get_llm_service()
    if not service.is_available():
        if not settings.llm_mocks_enabled:
            raise UpstreamException("Language model provider is not configured")
        logger.warning("[ai_scoring] no LLM provider configured; using mock scoring")
        return _mock_scoring(turns)

    config = LLMConfig(
        temperature=0.3,
        max_tokens=2000,
        json_mode=True,
        timeout_seconds=settings.llm_timeout_seconds,
        model=settings.evaluator_model if settings.llm_provider == "openai" else None,
    )
    response = service.generate(
        _build_system_prompt(scenario_title, scenario_description, evaluator_context),
        f"Transcript:\n{format_transcript(turns)}",
        config,
    )
    if not response.success:
        if response.timed_out:
            raise UpstreamException("Scoring service timed out")
        raise UpstreamException("Scoring service failed")

    if not isinstance(response.content, dict):
        logger.error(f"[ai_scoring] evaluator returned {type(response.content).__name__}, expected an object")
        raise UpstreamException("Scoring service returned an invalid evaluation")
    try:
        result = ScoringResult.model_validate({
            **response.content,
            "model": response.model,
            "raw_response": response.text,
        })
    except ValidationError as ve:
        logger.error(f"[ai_scoring] evaluator output failed validation: {ve}")
        raise UpstreamException("Scoring service returned an invalid evaluation")

    logger.info(
        f"[ai_scoring] scored transcript turns={len(turns)} score={result.overall_score} "
        f"flags={len(result.flags)}"
    )
    return result


def feedback_document(result: ScoringResult) -> str:
    """JSON blob persisted as ``Evaluation.feedback_json``."""
    return json.dumps({
        "grade": result.grade,
        "feedback": result.feedback,
        "strengths": result.strengths,
        "areas_to_improve": result.areas_to_improve,
    })
