from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session
from typing import Optional
import logging

from app.db import get_db
from app.exceptions import ValidationException
from app.models.user import User
from app.schemas.evaluation import AnalysisOut, EvaluateOut, EvaluationOut, FlagCreate, FlagOut
from app.schemas.session import (
    MessageCreate, MessageOut, SessionCreate, SessionOut, SessionUpdate,
    TranscriptSave, TranscriptSaveOut, TurnOut,
)
from app.services import analysis, evaluation as evaluation_service, transcripts
from app.services.auth import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["Sessions"])


def _session_out(db: Session, session, turns=None) -> SessionOut:
    if turns is None:
        turns = transcripts.live_turns(db, session)
    out = SessionOut.model_validate(session)
    out.transcript = [TurnOut.model_validate(t) for t in turns]
    return out


@router.post("", response_model=SessionOut, status_code=201)
def create_session(
    data: SessionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if data.type == "free_practice":
        session = transcripts.create_practice_session(
            db, current_user,
            user_id=data.user_id,
            model_type=data.model_type,
            scenario_id=data.scenario_id,
        )
    else:
        session = transcripts.create_session(db, data.assignment_id, current_user)
    return _session_out(db, session)


@router.get("/{session_id}", response_model=SessionOut)
def get_session(
    session_id: str,
    attempt: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    session, turns = transcripts.get_session(db, session_id, current_user, attempt)
    return _session_out(db, session, turns)


@router.patch("/{session_id}", response_model=SessionOut)
def update_session(
    session_id: str,
    data: SessionUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if not data.increment_attempt:
        raise ValidationException("Nothing to update; send increment_attempt=true to retry")
    session = transcripts.retry_attempt(db, session_id, current_user)
    return _session_out(db, session)


@router.post("/{session_id}/message", response_model=MessageOut)
def send_message(
    session_id: str,
    data: MessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    user_turn, assistant_turn = transcripts.send_message(db, session_id, current_user, data.content)
    return {"user_turn": user_turn, "assistant_turn": assistant_turn}


@router.post("/{session_id}/transcript", response_model=TranscriptSaveOut)
def save_transcript(
    session_id: str,
    data: TranscriptSave,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    turns = transcripts.save_transcript(db, session_id, current_user, data.as_pairs())
    return {"saved": len(turns), "turns": turns}


@router.post("/{session_id}/evaluate", response_model=EvaluateOut)
def evaluate_session(
    session_id: str,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    outcome = evaluation_service.evaluate(db, session_id, current_user)
    response.status_code = 201 if outcome.created else 200
    return {
        "evaluation": EvaluationOut.model_validate(outcome.evaluation),
        "created": outcome.created,
        "feedback": evaluation_service.evaluation_feedback(outcome.evaluation),
    }


@router.post("/{session_id}/analyze", response_model=AnalysisOut)
def analyze_session(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return analysis.analyze_session(db, session_id, current_user)


@router.post("/{session_id}/flag", response_model=FlagOut, status_code=201)
def submit_flag(
    session_id: str,
    data: FlagCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return evaluation_service.submit_feedback_flag(db, session_id, current_user, data.type, data.details)
