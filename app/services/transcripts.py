"""Session/transcript engine.

Turn numbering is the one strict ordering guarantee: within a
``(session_id, attempt_number)`` turn orders run 1..N with no gaps and no
reuse. Every append locks the session row, reads the current maximum and
inserts in one transaction; the guard re-runs the unit when a concurrent
writer still manages to collide on ``uq_transcript_turn_order``.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.exceptions import ConflictException, ForbiddenException, NotFoundException, ValidationException
from app.models.assignment import Assignment, AssignmentStatus
from app.models.evaluation import Evaluation
from app.models.scenario import Scenario
from app.models.training_session import SessionStatus, TrainingSession, TranscriptTurn, TurnRole
from app.services import audit, simulator
from app.services.assignment_state import transition
from app.services.auth import can_access_resource
from app.services.guard import TURN_ORDER_CONSTRAINT, run_in_transaction
from app.utils.datetime import utc_now

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_BATCH = 500

_VALID_ROLES = {r.value for r in TurnRole}
_VALID_MODEL_TYPES = {"phone", "chat"}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def load_session(db: Session, session_id: str, actor) -> TrainingSession:
    """Fetch a session and enforce owner-or-supervisor access."""
    session = db.query(TrainingSession).filter(TrainingSession.id == session_id).first()
    if not session:
        raise NotFoundException("Session not found")
    if not can_access_resource(actor, session.owner_id):
        raise ForbiddenException("Cannot access another user's session")
    return session


def live_turns(db: Session, session: TrainingSession) -> List[TranscriptTurn]:
    """Turns of the current attempt, in order. Earlier attempts are history only."""
    return attempt_turns(db, session.id, session.current_attempt)


def attempt_turns(db: Session, session_id: str, attempt_number: int) -> List[TranscriptTurn]:
    return (
        db.query(TranscriptTurn)
        .filter(
            TranscriptTurn.session_id == session_id,
            TranscriptTurn.attempt_number == attempt_number,
        )
        .order_by(TranscriptTurn.turn_order)
        .all()
    )


def turns_as_history(turns: Iterable[TranscriptTurn]) -> List[Dict[str, str]]:
    return [{"role": t.role, "content": t.content} for t in turns]


def has_evaluation(db: Session, session: TrainingSession) -> bool:
    if session.assignment_id:
        key = Evaluation.assignment_id == session.assignment_id
    else:
        key = Evaluation.session_id == session.id
    return db.query(Evaluation.id).filter(key).first() is not None


def get_session(db: Session, session_id: str, actor, attempt: Optional[int] = None) -> Tuple[TrainingSession, List[TranscriptTurn]]:
    session = load_session(db, session_id, actor)
    attempt = attempt or session.current_attempt
    if attempt < 1 or attempt > session.current_attempt:
        raise ValidationException(f"Attempt must be between 1 and {session.current_attempt}")
    return session, attempt_turns(db, session.id, attempt)


# ---------------------------------------------------------------------------
# Turn appends
# ---------------------------------------------------------------------------

def _lock_session(db: Session, session_id: str) -> TrainingSession:
    session = (
        db.query(TrainingSession)
        .filter(TrainingSession.id == session_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not session:
        raise NotFoundException("Session not found")
    return session


def _next_turn_order(db: Session, session_id: str, attempt_number: int) -> int:
    current = (
        db.query(func.max(TranscriptTurn.turn_order))
        .filter(
            TranscriptTurn.session_id == session_id,
            TranscriptTurn.attempt_number == attempt_number,
        )
        .scalar()
    )
    return (current or 0) + 1


def _validate_turns(turns: Sequence[Tuple[str, str]]) -> None:
    if not turns:
        raise ValidationException("At least one turn is required")
    if len(turns) > MAX_TRANSCRIPT_BATCH:
        raise ValidationException(f"At most {MAX_TRANSCRIPT_BATCH} turns per request")
    for role, content in turns:
        if role not in _VALID_ROLES:
            raise ValidationException(f"Invalid turn role: {role}")
        if not content or not content.strip():
            raise ValidationException("Turn content must not be empty")


def _insert_turns(db: Session, session: TrainingSession, turns: Sequence[Tuple[str, str]]) -> List[TranscriptTurn]:
    next_order = _next_turn_order(db, session.id, session.current_attempt)
    rows = []
    for offset, (role, content) in enumerate(turns):
        rows.append(TranscriptTurn(
            session_id=session.id,
            attempt_number=session.current_attempt,
            role=role,
            content=content,
            turn_order=next_order + offset,
        ))
    db.add_all(rows)
    db.flush()
    return rows


def append_turns(db: Session, session_id: str, turns: Sequence[Tuple[str, str]]) -> List[TranscriptTurn]:
    """Append ``(role, content)`` pairs to the live attempt as one atomic batch."""
    _validate_turns(turns)

    def work(db: Session) -> List[TranscriptTurn]:
        session = _lock_session(db, session_id)
        if session.status != SessionStatus.active.value:
            raise ConflictException("Session is not active")
        return _insert_turns(db, session, turns)

    rows = run_in_transaction(
        db, work,
        retry_unique=TURN_ORDER_CONSTRAINT,
        conflict_message="Could not append to transcript, please retry",
        description=f"append turns session={session_id}",
    )
    logger.debug(f"[transcripts] appended {len(rows)} turn(s) to session {session_id}")
    return rows


def append_turn(db: Session, session_id: str, role: str, content: str) -> TranscriptTurn:
    return append_turns(db, session_id, [(role, content)])[0]


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

def create_session(db: Session, assignment_id: str, actor) -> TrainingSession:
    """Start the single session for an assignment.

    The greeting is generated before any write; session, greeting turn and the
    assignment's move to in_progress then commit together.
    """
    assignment = db.query(Assignment).filter(Assignment.id == assignment_id).first()
    if not assignment:
        raise NotFoundException("Assignment not found")
    if not can_access_resource(actor, assignment.counselor_id):
        raise ForbiddenException("Cannot create a session for another counselor's assignment")
    if assignment.session is not None:
        raise ConflictException("A session already exists for this assignment")
    if assignment.status == AssignmentStatus.completed.value:
        raise ConflictException("Cannot create a session for a completed assignment")

    scenario_prompt = assignment.scenario.prompt
    model_type = assignment.scenario.mode if assignment.scenario.mode in _VALID_MODEL_TYPES else "chat"
    db.commit()

    greeting = simulator.generate_initial_greeting(scenario_prompt)

    def work(db: Session) -> TrainingSession:
        locked = (
            db.query(Assignment)
            .filter(Assignment.id == assignment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not locked:
            raise NotFoundException("Assignment not found")
        if locked.status == AssignmentStatus.completed.value:
            raise ConflictException("Cannot create a session for a completed assignment")
        session = TrainingSession(
            assignment_id=assignment_id,
            model_type=model_type,
            status=SessionStatus.active.value,
            current_attempt=1,
        )
        db.add(session)
        db.flush()
        db.add(TranscriptTurn(
            session_id=session.id,
            attempt_number=1,
            role=TurnRole.assistant.value,
            content=greeting,
            turn_order=1,
        ))
        transition(locked, AssignmentStatus.in_progress.value, actor)
        db.flush()
        return session

    # the loser of a racing create hits sessions.assignment_id uniqueness
    session = run_in_transaction(
        db, work,
        conflict_message="A session already exists for this assignment",
        description=f"create session assignment={assignment_id}",
    )
    audit.log_session_create(actor.id, session.id, assignment_id, model_type)
    return session


def create_practice_session(
    db: Session,
    actor,
    user_id: str,
    model_type: str,
    scenario_id: Optional[str] = None,
) -> TrainingSession:
    """Free-practice session owned by ``user_id``; chat runs open with a greeting."""
    if not can_access_resource(actor, user_id):
        raise ForbiddenException("Cannot create a session for another user")
    if model_type not in _VALID_MODEL_TYPES:
        raise ValidationException(f"Invalid model type: {model_type}")

    scenario_prompt = None
    if scenario_id:
        scenario = db.query(Scenario).filter(Scenario.id == scenario_id).first()
        if not scenario:
            raise NotFoundException("Scenario not found")
        scenario_prompt = scenario.prompt
    db.commit()

    greeting = None
    if model_type == "chat":
        if scenario_prompt:
            greeting = simulator.generate_initial_greeting(scenario_prompt)
        else:
            greeting = simulator.OPEN_PRACTICE_GREETING

    def work(db: Session) -> TrainingSession:
        session = TrainingSession(
            user_id=user_id,
            scenario_id=scenario_id,
            model_type=model_type,
            status=SessionStatus.active.value,
            current_attempt=1,
        )
        db.add(session)
        db.flush()
        if greeting:
            db.add(TranscriptTurn(
                session_id=session.id,
                attempt_number=1,
                role=TurnRole.assistant.value,
                content=greeting,
                turn_order=1,
            ))
            db.flush()
        return session

    session = run_in_transaction(db, work, description=f"create practice session user={user_id}")
    audit.log_session_create(actor.id, session.id, None, model_type)
    return session


def send_message(db: Session, session_id: str, actor, content: str) -> Tuple[TranscriptTurn, TranscriptTurn]:
    """One exchange: counselor message plus simulated caller reply.

    Both turns are written in a single batch after the reply is generated, so a
    failed model call leaves the transcript untouched.
    """
    if not content or not content.strip():
        raise ValidationException("Message content must not be empty")

    session = load_session(db, session_id, actor)
    if session.status != SessionStatus.active.value:
        raise ConflictException("Session is not active")

    scenario = session.assignment.scenario if session.assignment else session.scenario
    scenario_prompt = scenario.prompt if scenario else None
    history = turns_as_history(live_turns(db, session))
    history.append({"role": TurnRole.user.value, "content": content})
    db.commit()

    reply = simulator.generate_reply(scenario_prompt, history)

    user_turn, assistant_turn = append_turns(db, session_id, [
        (TurnRole.user.value, content),
        (TurnRole.assistant.value, reply),
    ])
    return user_turn, assistant_turn


def save_transcript(db: Session, session_id: str, actor, turns: Sequence[Tuple[str, str]]) -> List[TranscriptTurn]:
    """Persist turns captured elsewhere (voice sessions) without generating a reply."""
    session = load_session(db, session_id, actor)
    if session.status != SessionStatus.active.value:
        raise ConflictException("Session is not active")
    db.commit()
    return append_turns(db, session_id, turns)


def retry_attempt(db: Session, session_id: str, actor) -> TrainingSession:
    """Discard the live attempt and start the next one.

    Earlier turns stay stored under their attempt number. Once evaluated a
    session is final.
    """
    session = load_session(db, session_id, actor)

    def work(db: Session) -> TrainingSession:
        locked = _lock_session(db, session_id)
        if has_evaluation(db, locked):
            raise ConflictException("Session has already been evaluated")
        db.execute(
            update(TrainingSession)
            .where(TrainingSession.id == session_id)
            .values(
                current_attempt=TrainingSession.current_attempt + 1,
                status=SessionStatus.active.value,
                ended_at=None,
            )
        )
        db.flush()
        db.refresh(locked)
        return locked

    session = run_in_transaction(db, work, description=f"retry attempt session={session_id}")
    audit.log_session_retry(actor.id, session.id, session.current_attempt)
    return session
