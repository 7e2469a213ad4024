from sqlalchemy import Column, String, Text, DateTime, ForeignKey
from app.db import Base
from app.utils.datetime import utc_now
import uuid


class Scenario(Base):
    """Roleplay scenario a counselor practises against.

    Scenario authoring lives outside this service; the training core only reads
    the prompt and evaluator context when bootstrapping and scoring sessions.
    """

    __tablename__ = "scenarios"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    # system prompt that drives the simulated caller
    prompt = Column(Text, nullable=False)
    mode = Column(String, nullable=False, default="chat")  # phone | chat
    account_id = Column(String, nullable=True, index=True)
    evaluator_context = Column(Text, nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utc_now)
