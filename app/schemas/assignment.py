from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

from app.utils.datetime import is_past


class AssignmentCreate(BaseModel):
    scenario_id: str
    counselor_id: str
    due_date: Optional[datetime] = None
    supervisor_notes: Optional[str] = Field(default=None, max_length=5000)


class AssignmentBulkCreate(BaseModel):
    scenario_ids: List[str] = Field(min_length=1)
    counselor_ids: List[str] = Field(min_length=1)
    due_date: Optional[datetime] = None
    supervisor_notes: Optional[str] = Field(default=None, max_length=5000)


class AssignmentUpdate(BaseModel):
    """PATCH body. Omitted fields are left alone; explicit nulls clear due_date/notes."""
    status: Optional[str] = None
    due_date: Optional[datetime] = None
    supervisor_notes: Optional[str] = Field(default=None, max_length=5000)

    @field_validator('status')
    def status_known(cls, v):
        if v is not None and v not in {"pending", "in_progress", "completed"}:
            raise ValueError('status must be one of pending, in_progress, completed')
        return v


class AssignmentOut(BaseModel):
    id: str
    account_id: Optional[str]
    scenario_id: str
    scenario_title: Optional[str] = None
    counselor_id: str
    counselor_name: Optional[str] = None
    assigned_by: str
    status: str
    due_date: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    supervisor_notes: Optional[str]
    created_at: datetime
    session_id: Optional[str] = None
    evaluation_id: Optional[str] = None
    is_overdue: bool = False
    has_transcript: bool = False

    model_config = {
        'from_attributes': True
    }

    @classmethod
    def from_assignment(cls, assignment) -> "AssignmentOut":
        out = cls.model_validate(assignment)
        out.scenario_title = assignment.scenario.title if assignment.scenario else None
        out.counselor_name = assignment.counselor.name if assignment.counselor else None
        out.session_id = assignment.session.id if assignment.session else None
        out.evaluation_id = assignment.evaluation.id if assignment.evaluation else None
        out.is_overdue = assignment.status != "completed" and is_past(assignment.due_date)
        out.has_transcript = bool(assignment.session and assignment.session.turns)
        return out


class BulkSkipped(BaseModel):
    scenario_id: str
    counselor_id: str


class AssignmentBulkOut(BaseModel):
    created: List[AssignmentOut]
    skipped: List[BulkSkipped]
