"""Audit logging helper functions for key lifecycle events.

Standard single-line logs so they are easy to index.
"""
from __future__ import annotations
import logging
from typing import Optional, Any

from app.utils.datetime import utc_now

_logger = logging.getLogger("app.audit")


def _emit(event: str, user_id: Optional[str] = None, **data: Any):
    payload = {"ts": utc_now().isoformat(), "event": event}
    if user_id:
        payload["user_id"] = user_id
    payload.update(data)
    parts = [f"{k}={repr(v)}" for k, v in payload.items()]
    _logger.info("AUDIT " + " ".join(parts))

# Public convenience wrappers

def log_assignment_transition(user_id: str, assignment_id: str, from_status: str, to_status: str):
    _emit("assignment.transition", user_id=user_id, assignment_id=assignment_id,
          from_status=from_status, to_status=to_status)

def log_assignment_create(user_id: str, assignment_id: str, counselor_id: str, scenario_id: str):
    _emit("assignment.create", user_id=user_id, assignment_id=assignment_id,
          counselor_id=counselor_id, scenario_id=scenario_id)

def log_session_create(user_id: str, session_id: str, assignment_id: Optional[str], model_type: str):
    _emit("session.create", user_id=user_id, session_id=session_id,
          assignment_id=assignment_id, model_type=model_type)

def log_session_retry(user_id: str, session_id: str, attempt: int):
    _emit("session.retry", user_id=user_id, session_id=session_id, attempt=attempt)

def log_evaluation(user_id: str, session_id: str, evaluation_id: str, created: bool, score: float | None = None):
    # created=False marks an idempotent replay that returned the winning row
    _emit("evaluation.create" if created else "evaluation.replay", user_id=user_id,
          session_id=session_id, evaluation_id=evaluation_id, score=score)

def log_flag_create(user_id: Optional[str], session_id: str, flag_type: str, severity: str, source: str):
    _emit("flag.create", user_id=user_id, session_id=session_id, type=flag_type,
          severity=severity, source=source)
