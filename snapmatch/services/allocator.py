# snapmatch/services/allocator.py
import logging
import random
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from snapmatch.db import session_scope
from snapmatch.exceptions import AllocationExhausted, ExternalServiceError
from snapmatch.models import Event, User

logger = logging.getLogger("snapmatch.allocator")

MAX_ATTEMPTS = 10


def random_six_digits() -> str:
    return str(random.randint(100000, 999999))


def allocate_unique(
    generate: Callable[[], str],
    exists: Callable[[str], bool],
    max_attempts: int = MAX_ATTEMPTS,
    strict: bool = True,
) -> str:
    """Draw candidates until one is not taken.

    ``exists`` is called at most ``max_attempts`` times. When every candidate
    is taken, strict mode raises ``AllocationExhausted``; otherwise the last
    candidate is returned even though it collides.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    candidate = generate()
    for attempt in range(1, max_attempts + 1):
        if not exists(candidate):
            return candidate
        logger.info(f"Identifier {candidate} already taken (attempt {attempt}/{max_attempts})")
        if attempt < max_attempts:
            candidate = generate()
    if strict:
        raise AllocationExhausted(max_attempts, candidate)
    logger.warning(f"Reached maximum attempts; returning possibly colliding identifier {candidate}")
    return candidate


def _exists(session_factory, statement) -> bool:
    try:
        with session_scope(session_factory) as db:
            return db.execute(statement).first() is not None
    except SQLAlchemyError as e:
        raise ExternalServiceError("document store", f"uniqueness check failed: {e}") from e


def allocate_event_id(
    session_factory,
    max_attempts: int = MAX_ATTEMPTS,
    strict: bool = True,
    generate: Callable[[], str] = random_six_digits,
) -> str:
    def event_exists(candidate: str) -> bool:
        return _exists(session_factory, select(Event.event_id).where(Event.event_id == candidate))

    return allocate_unique(generate, event_exists, max_attempts=max_attempts, strict=strict)


def allocate_organization_code(
    session_factory,
    max_attempts: int = MAX_ATTEMPTS,
    strict: bool = True,
    generate: Callable[[], str] = random_six_digits,
) -> str:
    def code_exists(candidate: str) -> bool:
        return _exists(session_factory, select(User.user_id).where(User.organization_code == candidate))

    return allocate_unique(generate, code_exists, max_attempts=max_attempts, strict=strict)
