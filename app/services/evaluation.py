"""Evaluation coordinator.

Evaluation is a create-once fact. The unique key on ``evaluations``
(``assignment_id`` for assigned work, ``session_id`` for free practice) decides
which of two racing requests wins; the loser re-reads the winner and reports
success with ``created=False``.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    TooEarlyException,
    ValidationException,
)
from app.models.assignment import Assignment
from app.models.evaluation import Evaluation
from app.models.session_flag import SEVERITY_RANK, FlagSource, SessionFlag
from app.models.training_session import SessionStatus, TrainingSession
from app.services import audit
from app.services.ai_scoring import ScoringResult, feedback_document, score_transcript
from app.services.assignment_state import mark_completed
from app.services.auth import can_access_resource, is_supervisor
from app.services.guard import guarded_commit, is_unique_violation, run_in_transaction
from app.services.transcripts import live_turns, load_session, turns_as_history
from app.utils.datetime import utc_now

logger = logging.getLogger(__name__)

MIN_TURNS_FOR_EVALUATION = 2
EVALUATION_KEY_CONSTRAINTS = (
    "evaluations.assignment_id",
    "evaluations.session_id",
    "evaluations_assignment_id_key",
    "evaluations_session_id_key",
)

FEEDBACK_FLAG_TYPES = {"ai_guidance_concern", "voice_technical_issue", "scenario_issue", "other"}
FEEDBACK_SEVERITY = {
    "ai_guidance_concern": "critical",
    "voice_technical_issue": "warning",
}
FLAG_LIST_LIMIT = 50


@dataclass
class EvaluationOutcome:
    evaluation: Evaluation
    # False when a concurrent request had already written the evaluation
    created: bool


def _evaluation_key(assignment_id: Optional[str], session_id: str):
    if assignment_id:
        return Evaluation.assignment_id == assignment_id
    return Evaluation.session_id == session_id


def find_evaluation(db: Session, assignment_id: Optional[str], session_id: str) -> Optional[Evaluation]:
    return db.query(Evaluation).filter(_evaluation_key(assignment_id, session_id)).first()


def evaluate(db: Session, session_id: str, actor) -> EvaluationOutcome:
    """Score the live attempt and complete the session exactly once."""
    session = load_session(db, session_id, actor)
    assignment_id = session.assignment_id

    if find_evaluation(db, assignment_id, session_id) is not None:
        raise ConflictException("Session has already been evaluated")

    turns = live_turns(db, session)
    if len(turns) < MIN_TURNS_FOR_EVALUATION:
        raise TooEarlyException(
            f"At least {MIN_TURNS_FOR_EVALUATION} transcript turns are required before evaluation"
        )

    attempt = session.current_attempt
    scenario = session.assignment.scenario if session.assignment else session.scenario
    history = turns_as_history(turns)
    scenario_title = scenario.title if scenario else "Free practice"
    scenario_description = scenario.description if scenario else None
    evaluator_context = scenario.evaluator_context if scenario else None
    # release the read transaction before the long-latency scoring call
    db.commit()

    result = score_transcript(history, scenario_title, scenario_description, evaluator_context)
    completed_at = utc_now()

    def work(db: Session) -> Evaluation:
        return _persist(db, session_id, assignment_id, attempt, result, completed_at, actor.id)

    try:
        evaluation = run_in_transaction(
            db, work,
            conflict_message="Could not record evaluation, please retry",
            description=f"evaluate session={session_id}",
        )
    except ConflictException as e:
        cause = e.__cause__
        if not (isinstance(cause, IntegrityError) and is_unique_violation(cause, *EVALUATION_KEY_CONSTRAINTS)):
            raise
        winner = find_evaluation(db, assignment_id, session_id)
        if winner is None:
            raise
        logger.info(f"[evaluation] session {session_id} lost evaluation race; returning {winner.id}")
        audit.log_evaluation(actor.id, session_id, winner.id, created=False, score=winner.overall_score)
        return EvaluationOutcome(winner, created=False)

    audit.log_evaluation(actor.id, session_id, evaluation.id, created=True, score=evaluation.overall_score)
    return EvaluationOutcome(evaluation, created=True)


def _persist(
    db: Session,
    session_id: str,
    assignment_id: Optional[str],
    attempt: int,
    result: ScoringResult,
    completed_at,
    actor_id: str,
) -> Evaluation:
    """Evaluation row, session and assignment completion and flags as one unit. Does not commit."""
    session = (
        db.query(TrainingSession)
        .filter(TrainingSession.id == session_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not session:
        raise NotFoundException("Session not found")
    if session.current_attempt != attempt:
        raise ConflictException("Session was restarted while it was being evaluated")

    evaluation = Evaluation(
        assignment_id=assignment_id,
        session_id=None if assignment_id else session_id,
        overall_score=result.overall_score,
        feedback_json=feedback_document(result),
        strengths="\n".join(result.strengths),
        areas_to_improve="\n".join(result.areas_to_improve),
        raw_response=result.raw_response,
        model=result.model,
    )
    db.add(evaluation)
    # surfaces the uniqueness violation before the other writes
    db.flush()

    session.status = SessionStatus.completed.value
    session.ended_at = completed_at

    if assignment_id:
        assignment = (
            db.query(Assignment)
            .filter(Assignment.id == assignment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        mark_completed(assignment, completed_at, actor_id)

    for flag in result.flags:
        db.add(SessionFlag(
            session_id=session_id,
            type=flag.type,
            severity=flag.severity,
            details=flag.details,
            source=FlagSource.evaluation.value,
        ))
    db.flush()

    if result.flags:
        logger.warning(f"[evaluation] session {session_id} produced {len(result.flags)} flag(s)")
    return evaluation


def get_evaluation(db: Session, evaluation_id: str, actor) -> Evaluation:
    evaluation = db.query(Evaluation).filter(Evaluation.id == evaluation_id).first()
    if not evaluation:
        raise NotFoundException("Evaluation not found")
    if evaluation.assignment is not None:
        owner_id = evaluation.assignment.counselor_id
    else:
        owner_id = evaluation.session.user_id if evaluation.session else None
    if not can_access_resource(actor, owner_id):
        raise ForbiddenException("Cannot access another user's evaluation")
    return evaluation


def evaluation_feedback(evaluation: Evaluation) -> dict:
    try:
        return json.loads(evaluation.feedback_json)
    except (TypeError, ValueError):
        return {"feedback": evaluation.feedback_json}


def submit_feedback_flag(db: Session, session_id: str, actor, flag_type: str, details: str) -> SessionFlag:
    """Counselor-reported problem with a session; some types escalate severity."""
    if flag_type not in FEEDBACK_FLAG_TYPES:
        raise ValidationException(f"Invalid flag type: {flag_type}")
    if not details or not details.strip():
        raise ValidationException("Flag details must not be empty")

    session = db.query(TrainingSession).filter(TrainingSession.id == session_id).first()
    if not session or session.owner_id is None:
        raise NotFoundException("Session not found")
    if not can_access_resource(actor, session.owner_id):
        raise ForbiddenException("Cannot submit feedback for another user's session")

    flag = SessionFlag(
        session_id=session_id,
        type=flag_type,
        severity=FEEDBACK_SEVERITY.get(flag_type, "info"),
        details=details.strip(),
        status="pending",
        source=FlagSource.user_feedback.value,
    )
    db.add(flag)
    guarded_commit(db, "Could not record feedback flag")
    db.refresh(flag)
    audit.log_flag_create(actor.id, session_id, flag.type, flag.severity, flag.source)
    if flag.severity == "critical":
        logger.warning(f"[flags] critical feedback flag {flag.id} on session {session_id}")
    return flag


def list_flags(
    db: Session,
    actor,
    status: Optional[str] = None,
    severity: Optional[str] = None,
    session_id: Optional[str] = None,
) -> List[SessionFlag]:
    """Newest flags for supervisor review, most severe first."""
    if not is_supervisor(actor):
        raise ForbiddenException("Supervisor access required")
    query = db.query(SessionFlag)
    if status:
        query = query.filter(SessionFlag.status == status)
    if severity:
        query = query.filter(SessionFlag.severity == severity)
    if session_id:
        query = query.filter(SessionFlag.session_id == session_id)
    flags = query.order_by(SessionFlag.created_at.desc()).limit(FLAG_LIST_LIMIT).all()
    # stable sort keeps newest-first within a severity
    flags.sort(key=lambda f: SEVERITY_RANK.get(f.severity, 0), reverse=True)
    return flags
