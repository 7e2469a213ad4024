from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional

from app.db import get_db
from app.exceptions import ValidationException
from app.models.user import User
from app.schemas.evaluation import EvaluationOut, FlagOut
from app.services import evaluation as evaluation_service
from app.services.auth import get_current_user, require_supervisor

router = APIRouter(tags=["Flags & Evaluations"])

FLAG_STATUSES = {"pending", "reviewed", "dismissed"}
FLAG_SEVERITIES = {"info", "warning", "critical"}


@router.get("/flags", response_model=list[FlagOut])
def list_flags(
    status: Optional[str] = Query(None, description="pending | reviewed | dismissed"),
    severity: Optional[str] = Query(None, description="info | warning | critical"),
    session_id: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_supervisor),
):
    if status and status not in FLAG_STATUSES:
        raise ValidationException(f"Invalid flag status: {status}")
    if severity and severity not in FLAG_SEVERITIES:
        raise ValidationException(f"Invalid flag severity: {severity}")
    return evaluation_service.list_flags(
        db, current_user,
        status=status,
        severity=severity,
        session_id=session_id,
    )


@router.get("/evaluations/{evaluation_id}", response_model=EvaluationOut)
def get_evaluation(
    evaluation_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return evaluation_service.get_evaluation(db, evaluation_id, current_user)
