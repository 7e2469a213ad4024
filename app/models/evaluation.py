from sqlalchemy import Column, String, Text, Float, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from app.db import Base
from app.utils.datetime import utc_now
import uuid


class Evaluation(Base):
    """Scored outcome of a session's live attempt. Written once, never updated.

    Assignment-based sessions are keyed on ``assignment_id``; free-practice
    sessions on ``session_id``. Both columns are unique so the database decides
    which of two racing writers wins.
    """

    __tablename__ = "evaluations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    assignment_id = Column(
        String, ForeignKey("assignments.id", ondelete="CASCADE"), nullable=True, unique=True
    )
    session_id = Column(
        String, ForeignKey("sessions.id", ondelete="RESTRICT"), nullable=True, unique=True
    )
    overall_score = Column(Float, nullable=False)
    feedback_json = Column(Text, nullable=False)
    strengths = Column(Text, nullable=False, default="")
    areas_to_improve = Column(Text, nullable=False, default="")
    raw_response = Column(Text, nullable=True)
    model = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    assignment = relationship("Assignment", back_populates="evaluation")
    session = relationship("TrainingSession")

    __table_args__ = (
        CheckConstraint(
            "(assignment_id IS NOT NULL AND session_id IS NULL) OR "
            "(assignment_id IS NULL AND session_id IS NOT NULL)",
            name="ck_evaluation_single_parent",
        ),
    )
