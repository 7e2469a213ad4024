"""Conflict/idempotency guard shared by every write that can collide.

Storage uniqueness constraints are the source of truth for "only one of these
may exist". This module turns their violations into domain outcomes: a retry of
the whole transactional unit (turn numbering), a ``ConflictException``, or a
signal the caller resolves itself (evaluation replay).
"""
from __future__ import annotations

import logging
import random
import time
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.exceptions import ConflictException

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL SQLSTATEs for serialization failure and deadlock
_RETRYABLE_PGCODES = {"40001", "40P01"}

# Names that identify the turn-order constraint in PostgreSQL and SQLite messages
TURN_ORDER_CONSTRAINT = ("uq_transcript_turn_order", "transcript_turns.turn_order")


def _constraint_name(exc: DBAPIError) -> Optional[str]:
    diag = getattr(getattr(exc, "orig", None), "diag", None)
    return getattr(diag, "constraint_name", None)


def is_unique_violation(exc: IntegrityError, *names: str) -> bool:
    """Classify an IntegrityError as a uniqueness violation.

    With ``names`` given, also require one of them to appear in the constraint
    name (PostgreSQL) or the error message (SQLite reports table.column lists).
    """
    message = str(getattr(exc, "orig", exc)).lower()
    pgcode = getattr(getattr(exc, "orig", None), "pgcode", None)
    if pgcode != "23505" and "unique" not in message and "duplicate key" not in message:
        return False
    if not names:
        return True
    constraint = (_constraint_name(exc) or "").lower()
    return any(n.lower() in constraint or n.lower() in message for n in names)


def is_serialization_failure(exc: DBAPIError) -> bool:
    pgcode = getattr(getattr(exc, "orig", None), "pgcode", None)
    if pgcode in _RETRYABLE_PGCODES:
        return True
    message = str(getattr(exc, "orig", exc)).lower()
    return isinstance(exc, OperationalError) and "database is locked" in message


def translate_integrity_error(exc: IntegrityError, message: str = "Resource already exists") -> ConflictException:
    """Map a storage integrity error to the domain Conflict, keeping the cause."""
    logger.info(f"[guard] integrity violation translated to conflict: {getattr(exc, 'orig', exc)}")
    conflict = ConflictException(message)
    conflict.__cause__ = exc
    return conflict


def guarded_commit(db: Session, conflict_message: str) -> None:
    """Commit, turning any integrity violation into a ConflictException."""
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise translate_integrity_error(e, conflict_message)


def _backoff(attempt: int, base_delay: float = 0.02, factor: float = 2.0, cap: float = 0.5) -> None:
    delay = min(cap, base_delay * (factor ** (attempt - 1)))
    # jitter so racing writers do not retry in lockstep
    time.sleep(delay * (0.5 + random.random()))


def run_in_transaction(
    db: Session,
    work: Callable[[Session], T],
    *,
    retry_unique: Iterable[str] = (),
    retries: Optional[int] = None,
    conflict_message: str = "Concurrent update conflict, please retry",
    description: str = "write",
) -> T:
    """Run ``work`` and commit it as one unit, retrying on transient collisions.

    The whole unit is re-executed (not just the commit) so values computed
    from the database, such as the next turn number, are recomputed against
    the state the competing writer left behind.

    Retries on serialization failures, lock timeouts and uniqueness violations
    of the constraints named in ``retry_unique``. Any other integrity violation,
    or exhausting the retries, raises ``ConflictException``. Domain exceptions
    raised by ``work`` roll the unit back and propagate unchanged.
    """
    retry_unique = tuple(retry_unique)
    max_attempts = retries or settings.guard_max_retries
    for attempt in range(1, max_attempts + 1):
        try:
            result = work(db)
            db.commit()
            return result
        except IntegrityError as e:
            db.rollback()
            if retry_unique and is_unique_violation(e, *retry_unique) and attempt < max_attempts:
                logger.warning(f"[guard] {description}: unique collision, retry {attempt + 1}/{max_attempts}")
                _backoff(attempt)
                continue
            raise translate_integrity_error(e, conflict_message)
        except DBAPIError as e:
            db.rollback()
            if is_serialization_failure(e) and attempt < max_attempts:
                logger.warning(f"[guard] {description}: serialization failure, retry {attempt + 1}/{max_attempts}")
                _backoff(attempt)
                continue
            if is_serialization_failure(e):
                logger.error(f"[guard] {description}: gave up after {max_attempts} attempts")
                conflict = ConflictException(conflict_message)
                conflict.__cause__ = e
                raise conflict
            raise
        except Exception:
            db.rollback()
            raise
    # loop always returns or raises; kept for type checkers
    raise ConflictException(conflict_message)
