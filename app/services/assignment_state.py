"""Assignment status state machine and supervisor-side assignment plumbing.

The transition table below is the only place status edges are decided.
Completion is never reachable from a client request: the evaluation
coordinator calls ``mark_completed`` inside its own write transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime
from itertools import product
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from app.models.assignment import Assignment, AssignmentStatus
from app.models.scenario import Scenario
from app.models.user import User, UserRole, role_value
from app.services import audit
from app.services.auth import can_access_resource, is_supervisor
from app.services.guard import guarded_commit, is_unique_violation, run_in_transaction
from app.utils.datetime import to_naive_utc, utc_now

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    AssignmentStatus.pending.value: frozenset({AssignmentStatus.in_progress.value}),
    AssignmentStatus.in_progress.value: frozenset(
        {AssignmentStatus.pending.value, AssignmentStatus.completed.value}
    ),
    AssignmentStatus.completed.value: frozenset(),
}

ACTIVE_ASSIGNMENT_INDEX = ("uq_active_assignment", "assignments.counselor_id")
MAX_BULK_ASSIGNMENTS = 500

# Sentinel for "field not supplied" so an explicit None can clear a value
UNSET = object()


def transition(assignment: Assignment, requested_status: str, actor) -> bool:
    """Move ``assignment`` to ``requested_status`` on behalf of ``actor``.

    Returns True when the status changed, False for the idempotent no-op.
    Does not commit.
    """
    if requested_status not in VALID_TRANSITIONS:
        raise ValidationException(f"Unknown assignment status: {requested_status}")

    current = assignment.status
    if requested_status == AssignmentStatus.completed.value:
        raise InvalidTransitionException(
            current, requested_status,
            "Assignments cannot be completed directly; submit the session for evaluation",
        )

    if not is_supervisor(actor):
        if actor.id != assignment.counselor_id:
            raise ForbiddenException("Cannot update another counselor's assignment")
        if requested_status == AssignmentStatus.pending.value and current != requested_status:
            raise ForbiddenException("Only supervisors can reset an assignment to pending")

    if requested_status == current:
        return False

    if requested_status not in VALID_TRANSITIONS[current]:
        raise InvalidTransitionException(current, requested_status)

    _set_status(assignment, requested_status)
    audit.log_assignment_transition(actor.id, assignment.id, current, requested_status)
    return True


def _set_status(assignment: Assignment, status: str, now: Optional[datetime] = None) -> None:
    now = now or utc_now()
    assignment.status = status
    if status == AssignmentStatus.in_progress.value:
        assignment.started_at = now
    elif status == AssignmentStatus.pending.value:
        assignment.started_at = None
    elif status == AssignmentStatus.completed.value:
        assignment.completed_at = now


def mark_completed(assignment: Assignment, now: datetime, actor_id: Optional[str] = None) -> None:
    """Internal completion edge, used only by the evaluation coordinator."""
    current = assignment.status
    if current == AssignmentStatus.pending.value:
        # reset by a supervisor while its session was still running
        _set_status(assignment, AssignmentStatus.in_progress.value, now)
        current = AssignmentStatus.in_progress.value
    if AssignmentStatus.completed.value not in VALID_TRANSITIONS[current]:
        raise InvalidTransitionException(current, AssignmentStatus.completed.value)
    _set_status(assignment, AssignmentStatus.completed.value, now)
    audit.log_assignment_transition(actor_id, assignment.id, current, AssignmentStatus.completed.value)


def get_assignment(db: Session, assignment_id: str, actor) -> Assignment:
    assignment = db.query(Assignment).filter(Assignment.id == assignment_id).first()
    if not assignment:
        raise NotFoundException("Assignment not found")
    if not can_access_resource(actor, assignment.counselor_id):
        raise ForbiddenException("Cannot access another counselor's assignment")
    return assignment


def apply_update(
    db: Session,
    assignment_id: str,
    actor,
    status: Optional[str] = None,
    due_date=UNSET,
    supervisor_notes=UNSET,
) -> Assignment:
    """PATCH semantics: status through the state machine, other fields supervisor-only."""
    if not is_supervisor(actor) and (due_date is not UNSET or supervisor_notes is not UNSET):
        raise ForbiddenException("Only supervisors can change due dates or notes")

    def work(db: Session) -> Assignment:
        assignment = (
            db.query(Assignment)
            .filter(Assignment.id == assignment_id)
            .with_for_update()
            .first()
        )
        if not assignment:
            raise NotFoundException("Assignment not found")
        if not can_access_resource(actor, assignment.counselor_id):
            raise ForbiddenException("Cannot update another counselor's assignment")

        if status is not None:
            transition(assignment, status, actor)
        if due_date is not UNSET:
            assignment.due_date = to_naive_utc(due_date)
        if supervisor_notes is not UNSET:
            assignment.supervisor_notes = supervisor_notes
        return assignment

    return run_in_transaction(
        db, work,
        conflict_message="Assignment was modified concurrently, please retry",
        description=f"update assignment={assignment_id}",
    )


def _has_active_assignment(db: Session, counselor_id: str, scenario_id: str) -> bool:
    return db.query(Assignment.id).filter(
        Assignment.counselor_id == counselor_id,
        Assignment.scenario_id == scenario_id,
        Assignment.status != AssignmentStatus.completed.value,
    ).first() is not None


def create_assignment(
    db: Session,
    actor,
    scenario_id: str,
    counselor_id: str,
    due_date: Optional[datetime] = None,
    supervisor_notes: Optional[str] = None,
) -> Assignment:
    if not is_supervisor(actor):
        raise ForbiddenException("Supervisor access required")

    scenario = db.query(Scenario).filter(Scenario.id == scenario_id).first()
    if not scenario:
        raise NotFoundException("Scenario not found")
    counselor = db.query(User).filter(User.id == counselor_id).first()
    if not counselor:
        raise NotFoundException("Counselor not found")
    if role_value(counselor) != UserRole.counselor.value:
        raise ValidationException("Assignments can only target counselors")
    if _has_active_assignment(db, counselor_id, scenario_id):
        raise ConflictException("Counselor already has an active assignment for this scenario")

    def work(db: Session) -> Assignment:
        assignment = Assignment(
            scenario_id=scenario_id,
            counselor_id=counselor_id,
            assigned_by=actor.id,
            account_id=scenario.account_id,
            status=AssignmentStatus.pending.value,
            due_date=to_naive_utc(due_date),
            supervisor_notes=supervisor_notes,
        )
        db.add(assignment)
        db.flush()
        return assignment

    # a racing create loses on uq_active_assignment and surfaces as Conflict
    assignment = run_in_transaction(
        db, work,
        conflict_message="Counselor already has an active assignment for this scenario",
        description=f"create assignment counselor={counselor_id} scenario={scenario_id}",
    )
    audit.log_assignment_create(actor.id, assignment.id, counselor_id, scenario_id)
    return assignment


def bulk_create_assignments(
    db: Session,
    actor,
    scenario_ids: List[str],
    counselor_ids: List[str],
    due_date: Optional[datetime] = None,
    supervisor_notes: Optional[str] = None,
) -> dict:
    """Assign every scenario to every counselor, skipping active pairs.

    Each pair commits on its own so a concurrent duplicate skips that pair only.
    """
    if not is_supervisor(actor):
        raise ForbiddenException("Supervisor access required")

    scenario_ids = list(dict.fromkeys(scenario_ids))
    counselor_ids = list(dict.fromkeys(counselor_ids))
    total = len(scenario_ids) * len(counselor_ids)
    if total == 0:
        raise ValidationException("At least one scenario and one counselor are required")
    if total > MAX_BULK_ASSIGNMENTS:
        raise ValidationException(
            f"Bulk assignment limited to {MAX_BULK_ASSIGNMENTS} pairs (requested {total})"
        )

    scenarios = {s.id: s for s in db.query(Scenario).filter(Scenario.id.in_(scenario_ids)).all()}
    missing = [sid for sid in scenario_ids if sid not in scenarios]
    if missing:
        raise NotFoundException(f"Scenarios not found: {', '.join(missing)}")
    counselors = db.query(User).filter(User.id.in_(counselor_ids)).all()
    found = {u.id for u in counselors if role_value(u) == UserRole.counselor.value}
    missing = [cid for cid in counselor_ids if cid not in found]
    if missing:
        raise NotFoundException(f"Counselors not found: {', '.join(missing)}")

    created: List[Assignment] = []
    skipped: List[dict] = []
    for scenario_id, counselor_id in product(scenario_ids, counselor_ids):
        if _has_active_assignment(db, counselor_id, scenario_id):
            skipped.append({"scenario_id": scenario_id, "counselor_id": counselor_id})
            continue
        assignment = Assignment(
            scenario_id=scenario_id,
            counselor_id=counselor_id,
            assigned_by=actor.id,
            account_id=scenarios[scenario_id].account_id,
            status=AssignmentStatus.pending.value,
            due_date=to_naive_utc(due_date),
            supervisor_notes=supervisor_notes,
        )
        db.add(assignment)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            if not is_unique_violation(e, *ACTIVE_ASSIGNMENT_INDEX):
                raise
            skipped.append({"scenario_id": scenario_id, "counselor_id": counselor_id})
            continue
        created.append(assignment)
        audit.log_assignment_create(actor.id, assignment.id, counselor_id, scenario_id)

    logger.info(f"[assignments] bulk create by {actor.id}: created={len(created)} skipped={len(skipped)}")
    return {"created": created, "skipped": skipped}


def list_assignments(
    db: Session,
    actor,
    counselor_id: Optional[str] = None,
    statuses: Optional[List[str]] = None,
    scenario_id: Optional[str] = None,
    limit: int = 100,
) -> List[Assignment]:
    query = db.query(Assignment)
    if is_supervisor(actor):
        if counselor_id:
            query = query.filter(Assignment.counselor_id == counselor_id)
    else:
        query = query.filter(Assignment.counselor_id == actor.id)
    if statuses:
        unknown = [s for s in statuses if s not in VALID_TRANSITIONS]
        if unknown:
            raise ValidationException(f"Unknown assignment status: {', '.join(unknown)}")
        query = query.filter(Assignment.status.in_(statuses))
    if scenario_id:
        query = query.filter(Assignment.scenario_id == scenario_id)
    return query.order_by(Assignment.created_at.desc()).limit(limit).all()


def delete_assignment(db: Session, assignment_id: str, actor) -> None:
    if not is_supervisor(actor):
        raise ForbiddenException("Supervisor access required")
    assignment = db.query(Assignment).filter(Assignment.id == assignment_id).first()
    if not assignment:
        raise NotFoundException("Assignment not found")
    db.delete(assignment)
    guarded_commit(db, "Assignment could not be deleted")
    logger.info(f"[assignments] deleted {assignment_id} by {actor.id}")
