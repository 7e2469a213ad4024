from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from firebase_admin import auth as firebase_auth
from app.db import get_db
from app.exceptions import ForbiddenException, UnauthorizedException
from app.models.user import User, UserRole, role_value
from sqlalchemy.orm import Session
from app.utils.datetime import utc_now
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Development tokens (persisted on first use so FK constraints pass)
MOCK_TOKENS = {
    "mock-counselor-token": ("counselor-1", "Counselor One", "counselor@example.com", UserRole.counselor),
    "mock-supervisor-token": ("supervisor-1", "Supervisor One", "supervisor@example.com", UserRole.supervisor),
}


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    token = credentials.credentials
    if token in MOCK_TOKENS:
        uid, name, email, role = MOCK_TOKENS[token]
        user = db.query(User).filter(User.id == uid).first()
        if not user:
            user = User(id=uid, name=name, email=email, role=role, created_at=utc_now())
            db.add(user)
            db.commit()
            db.refresh(user)
        return user

    try:
        decoded_token = firebase_auth.verify_id_token(token)
        user_id = decoded_token["uid"]
        email = decoded_token["email"]
        full_name = decoded_token.get("name")
        # Role comes from a custom claim set by the identity provider
        role_from_token = decoded_token.get("role")
    except Exception:
        raise UnauthorizedException("Invalid or expired token")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        user_role = UserRole.supervisor if role_from_token == "supervisor" else UserRole.counselor
        user = User(
            id=user_id,
            email=email,
            name=full_name if full_name else email.split('@')[0].title(),
            role=user_role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"[auth] provisioned user {user_id} role={user_role.value}")
    elif role_from_token in {r.value for r in UserRole} and role_value(user) != role_from_token:
        # Identity provider is authoritative for roles
        user.role = UserRole(role_from_token)
        db.commit()

    return user


def is_supervisor(user) -> bool:
    return role_value(user) == UserRole.supervisor.value


def can_access_resource(user, owner_id) -> bool:
    """True iff the user owns the resource or is a supervisor."""
    if owner_id is None:
        return False
    return user.id == owner_id or is_supervisor(user)


def require_supervisor(user: User = Depends(get_current_user)) -> User:
    if not is_supervisor(user):
        raise ForbiddenException("Supervisor access required")
    return user
