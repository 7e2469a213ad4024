from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session
from typing import Optional

from app.db import get_db
from app.models.user import User
from app.schemas.assignment import (
    AssignmentBulkCreate, AssignmentBulkOut, AssignmentCreate, AssignmentOut, AssignmentUpdate,
)
from app.services import assignment_state
from app.services.auth import get_current_user, require_supervisor

router = APIRouter(prefix="/assignments", tags=["Assignments"])


@router.post("", response_model=AssignmentOut, status_code=201)
def create_assignment(
    data: AssignmentCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_supervisor),
):
    assignment = assignment_state.create_assignment(
        db, current_user,
        scenario_id=data.scenario_id,
        counselor_id=data.counselor_id,
        due_date=data.due_date,
        supervisor_notes=data.supervisor_notes,
    )
    return AssignmentOut.from_assignment(assignment)


@router.post("/bulk", response_model=AssignmentBulkOut, status_code=201)
def bulk_create_assignments(
    data: AssignmentBulkCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_supervisor),
):
    result = assignment_state.bulk_create_assignments(
        db, current_user,
        scenario_ids=data.scenario_ids,
        counselor_ids=data.counselor_ids,
        due_date=data.due_date,
        supervisor_notes=data.supervisor_notes,
    )
    return {
        "created": [AssignmentOut.from_assignment(a) for a in result["created"]],
        "skipped": result["skipped"],
    }


@router.get("", response_model=list[AssignmentOut])
def list_assignments(
    counselor_id: Optional[str] = None,
    status: Optional[str] = Query(None, description="Comma-separated statuses"),
    scenario_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    assignments = assignment_state.list_assignments(
        db, current_user,
        counselor_id=counselor_id,
        statuses=statuses,
        scenario_id=scenario_id,
        limit=limit,
    )
    return [AssignmentOut.from_assignment(a) for a in assignments]


@router.get("/{assignment_id}", response_model=AssignmentOut)
def get_assignment(
    assignment_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return AssignmentOut.from_assignment(assignment_state.get_assignment(db, assignment_id, current_user))


@router.patch("/{assignment_id}", response_model=AssignmentOut)
def update_assignment(
    assignment_id: str,
    data: AssignmentUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    # only fields present in the body are applied; explicit nulls clear
    supplied = data.model_fields_set
    assignment = assignment_state.apply_update(
        db, assignment_id, current_user,
        status=data.status,
        due_date=data.due_date if "due_date" in supplied else assignment_state.UNSET,
        supervisor_notes=(
            data.supervisor_notes if "supervisor_notes" in supplied else assignment_state.UNSET
        ),
    )
    return AssignmentOut.from_assignment(assignment)


@router.delete("/{assignment_id}", status_code=204)
def delete_assignment(
    assignment_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_supervisor),
):
    assignment_state.delete_assignment(db, assignment_id, current_user)
    return Response(status_code=204)
