from sqlalchemy import Column, String, Text, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import relationship
import enum
from app.db import Base
from app.utils.datetime import utc_now
import uuid


class FlagSeverity(str, enum.Enum):
    info = "info"
    warning = "warning"
    critical = "critical"


class FlagSource(str, enum.Enum):
    evaluation = "evaluation"
    analysis = "analysis"
    user_feedback = "user_feedback"


SEVERITY_RANK = {"critical": 3, "warning": 2, "info": 1}


class SessionFlag(Base):
    __tablename__ = "session_flags"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String, nullable=False)
    severity = Column(String, nullable=False, default=FlagSeverity.info.value)
    details = Column(Text, nullable=False)
    # name "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", JSON, nullable=True)
    status = Column(String, nullable=False, default="pending")
    source = Column(String, nullable=False, default=FlagSource.evaluation.value)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    session = relationship("TrainingSession", back_populates="flags")

    __table_args__ = (
        Index("ix_session_flags_status_severity", "status", "severity"),
        Index("ix_session_flags_session_source", "session_id", "source"),
    )
