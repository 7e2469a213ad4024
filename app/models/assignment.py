from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import relationship
import enum
from app.db import Base
from app.utils.datetime import utc_now
import uuid


class AssignmentStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"


class Assignment(Base):
    __tablename__ = "assignments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, nullable=True, index=True)
    scenario_id = Column(String, ForeignKey("scenarios.id"), nullable=False)
    counselor_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assigned_by = Column(String, ForeignKey("users.id"), nullable=False)
    status = Column(String, nullable=False, default=AssignmentStatus.pending.value)
    due_date = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    supervisor_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    scenario = relationship("Scenario")
    counselor = relationship("User", foreign_keys=[counselor_id], back_populates="assignments")
    supervisor = relationship("User", foreign_keys=[assigned_by])
    session = relationship(
        "TrainingSession", back_populates="assignment", uselist=False,
        cascade="all, delete-orphan",
    )
    evaluation = relationship(
        "Evaluation", back_populates="assignment", uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        # One open assignment per counselor/scenario pair; completed rows are history
        Index(
            "uq_active_assignment",
            "counselor_id",
            "scenario_id",
            unique=True,
            postgresql_where=text("status != 'completed'"),
            sqlite_where=text("status != 'completed'"),
        ),
        Index("ix_assignments_counselor_status", "counselor_id", "status"),
    )
