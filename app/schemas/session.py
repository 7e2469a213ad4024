from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Literal
from datetime import datetime


class SessionCreate(BaseModel):
    """Either ``{assignment_id}`` or ``{type: "free_practice", user_id, model_type, scenario_id?}``."""
    type: Literal["assignment", "free_practice"] = "assignment"
    assignment_id: Optional[str] = None
    user_id: Optional[str] = None
    model_type: Optional[Literal["phone", "chat"]] = None
    scenario_id: Optional[str] = None

    @model_validator(mode='after')
    def check_shape(self):
        if self.type == "assignment" and not self.assignment_id:
            raise ValueError('assignment_id is required')
        if self.type == "free_practice" and (not self.user_id or not self.model_type):
            raise ValueError('user_id and model_type are required for free practice')
        return self


class SessionUpdate(BaseModel):
    increment_attempt: bool = False


class TurnIn(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(min_length=1, max_length=20000)


class TranscriptSave(BaseModel):
    """A single ``{role, content}`` turn or a ``{turns: [...]}`` batch."""
    role: Optional[Literal["user", "assistant"]] = None
    content: Optional[str] = Field(default=None, max_length=20000)
    turns: Optional[List[TurnIn]] = Field(default=None, max_length=500)

    @model_validator(mode='after')
    def check_shape(self):
        if self.turns:
            return self
        if self.role and self.content:
            return self
        raise ValueError('provide either role and content, or a non-empty turns list')

    def as_pairs(self) -> List[tuple]:
        if self.turns:
            return [(t.role, t.content) for t in self.turns]
        return [(self.role, self.content)]


class MessageCreate(BaseModel):
    content: str = Field(min_length=1, max_length=20000)


class TurnOut(BaseModel):
    id: str
    attempt_number: int
    role: str
    content: str
    turn_order: int
    created_at: datetime

    model_config = {
        'from_attributes': True
    }


class SessionOut(BaseModel):
    id: str
    assignment_id: Optional[str]
    user_id: Optional[str]
    scenario_id: Optional[str]
    model_type: str
    status: str
    current_attempt: int
    started_at: datetime
    ended_at: Optional[datetime]
    transcript: List[TurnOut] = []

    model_config = {
        'from_attributes': True
    }


class MessageOut(BaseModel):
    user_turn: TurnOut
    assistant_turn: TurnOut


class TranscriptSaveOut(BaseModel):
    saved: int
    turns: List[TurnOut]
