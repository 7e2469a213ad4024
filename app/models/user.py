from sqlalchemy import Column, String, DateTime, Enum
from sqlalchemy.orm import relationship
import enum
from app.db import Base
from app.utils.datetime import utc_now
import uuid

class UserRole(enum.Enum):
    counselor = "counselor"
    supervisor = "supervisor"

class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.counselor)
    created_at = Column(DateTime, default=utc_now)

    # Assignments this user must complete (when user is a counselor)
    assignments = relationship(
        "Assignment",
        back_populates="counselor",
        foreign_keys="Assignment.counselor_id",
        cascade="all, delete-orphan",
    )


def role_value(user) -> str:
    """Normalize a user's role to its string value.

    Test fixtures and dependency overrides may hand us a plain string instead of
    the enum member.
    """
    role = getattr(user, "role", None)
    return role.value if hasattr(role, "value") else str(role)
