"""Post-session misuse and consistency analysis.

Supervisor-triggered and idempotent: a session is analysed at most once, and a
clean scan still leaves an ``analysis_clean`` flag as the audit trail.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.exceptions import ForbiddenException, NotFoundException, UpstreamException
from app.models.session_flag import FlagSource, SessionFlag
from app.models.training_session import TrainingSession
from app.services import audit
from app.services.ai_scoring import ScoredFlag, format_transcript
from app.services.auth import is_supervisor
from app.services.guard import run_in_transaction
from app.services.llm import LLMConfig, get_llm_service
from app.services.transcripts import live_turns, turns_as_history

logger = logging.getLogger(__name__)

MIN_TURNS_FOR_ANALYSIS = 3


class Finding(ScoredFlag):
    evidence: Optional[str] = None
    prompt_reference: Optional[str] = None


class ConsistencyReport(BaseModel):
    overall_score: Optional[float] = None
    summary: str = ""
    findings: List[Finding] = []


class AnalysisResult(BaseModel):
    misuse: List[Finding] = []
    consistency: ConsistencyReport = ConsistencyReport()


_SYSTEM_PROMPT = (
    "You review crisis counselor training transcripts. Identify (1) misuse: the counselor "
    "using the simulator for anything other than practice, or unsafe guidance; (2) "
    "consistency: places where the simulated caller drifted from the scenario prompt. "
    'Respond with JSON: {"misuse": [finding], "consistency": {"overall_score": 0-100, '
    '"summary": str, "findings": [finding]}} where finding is {"type", "severity": '
    'info|warning|critical, "details", "evidence", "prompt_reference"}.'
)


def analyze_transcript(
    turns: List[Dict[str, str]],
    scenario_prompt: Optional[str],
    scenario_description: Optional[str],
) -> AnalysisResult:
    service = get_llm_service()
    if not service.is_available():
        if not settings.llm_mocks_enabled:
            raise UpstreamException("Language model provider is not configured")
        logger.warning("[analysis] no LLM provider configured; using mock analysis")
        return AnalysisResult(consistency=ConsistencyReport(overall_score=100, summary="Mock analysis"))

    user_content = (
        f"Scenario prompt:\n{scenario_prompt or '(free practice)'}\n\n"
        f"Scenario description:\n{scenario_description or '(none)'}\n\n"
        f"Transcript:\n{format_transcript(turns)}"
    )
    response = service.generate(
        _SYSTEM_PROMPT,
        user_content,
        LLMConfig(json_mode=True, temperature=0.2, timeout_seconds=settings.llm_timeout_seconds),
    )
    if not response.success:
        raise UpstreamException("Analysis service timed out" if response.timed_out else "Analysis service failed")
    try:
        return AnalysisResult.model_validate(response.content)
    except ValidationError as ve:
        logger.error(f"[analysis] invalid analysis output: {ve}")
        raise UpstreamException("Analysis service returned an invalid report")


def _analysis_flag_count(db: Session, session_id: str) -> int:
    return (
        db.query(func.count(SessionFlag.id))
        .filter(SessionFlag.session_id == session_id, SessionFlag.source == FlagSource.analysis.value)
        .scalar()
    )


def analyze_session(db: Session, session_id: str, actor) -> dict:
    """Scan the live attempt and persist findings as analysis flags."""
    if not is_supervisor(actor):
        raise ForbiddenException("Supervisor access required")

    session = db.query(TrainingSession).filter_by(id=session_id).first()
    if not session:
        raise NotFoundException("Session not found")

    existing = _analysis_flag_count(db, session_id)
    if existing:
        return {"analyzed": False, "reason": "already_analyzed", "flag_count": existing}

    turns = live_turns(db, session)
    if len(turns) < MIN_TURNS_FOR_ANALYSIS:
        return {"analyzed": False, "reason": "insufficient_transcript"}

    scenario = session.assignment.scenario if session.assignment else session.scenario
    history = turns_as_history(turns)
    scenario_prompt = scenario.prompt if scenario else None
    scenario_description = scenario.description if scenario else None
    # no transaction held across the model call
    db.commit()

    result = analyze_transcript(history, scenario_prompt, scenario_description)

    flags: List[SessionFlag] = []
    for finding in result.misuse:
        flags.append(SessionFlag(
            session_id=session_id, type=finding.type, severity=finding.severity,
            details=finding.details, metadata_json={"evidence": finding.evidence},
            source=FlagSource.analysis.value,
        ))
    for finding in result.consistency.findings:
        flags.append(SessionFlag(
            session_id=session_id, type=finding.type, severity=finding.severity,
            details=finding.details,
            metadata_json={
                "evidence": finding.evidence,
                "prompt_reference": finding.prompt_reference,
                "overall_score": result.consistency.overall_score,
            },
            source=FlagSource.analysis.value,
        ))
    if not flags:
        flags.append(SessionFlag(
            session_id=session_id, type="analysis_clean", severity="info",
            details="Post-session analysis completed, no issues found.",
            metadata_json={
                "overall_consistency_score": result.consistency.overall_score,
                "consistency_summary": result.consistency.summary,
            },
            source=FlagSource.analysis.value,
        ))

    def work(db: Session) -> int:
        db.query(TrainingSession).filter(TrainingSession.id == session_id).with_for_update().first()
        # a concurrent request may have finished its scan while ours was running
        existing = _analysis_flag_count(db, session_id)
        if existing:
            return existing
        db.add_all(flags)
        db.flush()
        return 0

    existing = run_in_transaction(db, work, description=f"analyze session={session_id}")
    if existing:
        logger.info(f"[analysis] session {session_id} analyzed concurrently; discarding duplicate findings")
        return {"analyzed": False, "reason": "already_analyzed", "flag_count": existing}
    for flag in flags:
        audit.log_flag_create(actor.id, session_id, flag.type, flag.severity, flag.source)

    return {
        "analyzed": True,
        "flag_count": len(flags),
        "overall_consistency_score": result.consistency.overall_score,
    }
