from sqlalchemy import (
    Column, String, Text, Integer, DateTime, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship
import enum
from app.db import Base
from app.utils.datetime import utc_now
import uuid


class SessionStatus(str, enum.Enum):
    active = "active"
    completed = "completed"


class TurnRole(str, enum.Enum):
    user = "user"
    assistant = "assistant"


class TrainingSession(Base):
    """One run of an assignment, or a standalone free-practice run."""

    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # 1:1 with assignment; the unique constraint settles racing creates
    assignment_id = Column(
        String, ForeignKey("assignments.id", ondelete="CASCADE"), nullable=True, unique=True
    )
    # set only for free practice
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    scenario_id = Column(String, ForeignKey("scenarios.id"), nullable=True)
    model_type = Column(String, nullable=False, default="chat")  # phone | chat
    status = Column(String, nullable=False, default=SessionStatus.active.value)
    current_attempt = Column(Integer, nullable=False, default=1)
    started_at = Column(DateTime, default=utc_now, nullable=False)
    ended_at = Column(DateTime, nullable=True)

    assignment = relationship("Assignment", back_populates="session")
    scenario = relationship("Scenario")
    user = relationship("User")
    turns = relationship(
        "TranscriptTurn",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by=lambda: [TranscriptTurn.attempt_number, TranscriptTurn.turn_order],
    )
    flags = relationship("SessionFlag", back_populates="session", cascade="all, delete-orphan")

    @property
    def owner_id(self):
        if self.assignment is not None:
            return self.assignment.counselor_id
        return self.user_id


class TranscriptTurn(Base):
    __tablename__ = "transcript_turns"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    attempt_number = Column(Integer, nullable=False, default=1)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    turn_order = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    session = relationship("TrainingSession", back_populates="turns")

    __table_args__ = (
        UniqueConstraint(
            "session_id", "attempt_number", "turn_order", name="uq_transcript_turn_order"
        ),
        Index("ix_transcript_turns_session_attempt", "session_id", "attempt_number"),
    )
