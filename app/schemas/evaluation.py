from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


class EvaluationOut(BaseModel):
    id: str
    assignment_id: Optional[str]
    session_id: Optional[str]
    overall_score: float
    feedback_json: str
    strengths: str
    areas_to_improve: str
    model: Optional[str]
    created_at: datetime

    model_config = {
        'from_attributes': True
    }


class EvaluateOut(BaseModel):
    evaluation: EvaluationOut
    # False when another request had already evaluated the session
    created: bool
    feedback: Dict[str, Any] = {}


class FlagCreate(BaseModel):
    type: str
    details: str = Field(min_length=1, max_length=2000)


class FlagOut(BaseModel):
    id: str
    session_id: str
    type: str
    severity: str
    details: str
    metadata_json: Optional[Dict[str, Any]] = Field(default=None, serialization_alias="metadata")
    status: str
    source: str
    created_at: datetime

    model_config = {
        'from_attributes': True
    }


class AnalysisOut(BaseModel):
    analyzed: bool
    reason: Optional[str] = None
    flag_count: Optional[int] = None
    overall_consistency_score: Optional[float] = None
