# snapmatch/services/ownership.py
"""The one place that knows an event's owner may sit in several columns.

Rows written before ``owner_id`` existed carry the owner in ``user_email``,
``organizer_id`` and/or ``user_id``, sometimes all three at once. Every
"events of this user" question goes through :func:`events_owned_by`, which
treats those columns as aliases of a single relation.
"""
import logging
from typing import Iterable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from snapmatch.db import session_scope
from snapmatch.models import Event
from snapmatch.schemas import EventRecord

logger = logging.getLogger("snapmatch.ownership")

OWNERSHIP_COLUMNS = (Event.owner_id, Event.user_email, Event.organizer_id, Event.user_id)
LEGACY_FIELDS = ("user_email", "organizer_id", "user_id")


def owner_of(event) -> str | None:
    """Owner of an Event row or EventRecord, whichever field holds it."""
    return event.owner_id or event.organizer_id or event.user_id or event.user_email


def stamp_owner(event: Event, owner: str) -> None:
    """Writes the owner to the canonical field and every legacy alias."""
    event.owner_id = owner
    for field in LEGACY_FIELDS:
        setattr(event, field, owner)


def dedupe_by_event_id(groups: Iterable[Iterable[Event]]) -> list[Event]:
    """Flattens per-field results, keeping the first row seen for each event id."""
    seen: dict[str, Event] = {}
    for rows in groups:
        for row in rows:
            seen.setdefault(row.event_id, row)
    return list(seen.values())


def owned_event_rows(db: Session, user_id: str) -> list[Event]:
    groups = [db.execute(select(Event).where(column == user_id)).scalars().all() for column in OWNERSHIP_COLUMNS]
    return dedupe_by_event_id(groups)


def events_owned_by(session_factory, user_id: str) -> list[EventRecord]:
    with session_scope(session_factory) as db:
        return [EventRecord.model_validate(row) for row in owned_event_rows(db, user_id)]


def is_owner(event, user_id: str) -> bool:
    return user_id in {event.owner_id, event.user_email, event.organizer_id, event.user_id}


def migrate_legacy_owners(session_factory) -> int:
    """Backfills ``owner_id`` and the legacy aliases on old rows.

    Returns the number of rows touched. Rows whose fields disagree keep the
    first non-empty value in ``owner_of`` order.
    """
    touched = 0
    with session_scope(session_factory) as db:
        missing = [column.is_(None) for column in OWNERSHIP_COLUMNS]
        for event in db.execute(select(Event).where(or_(*missing))).scalars():
            owner = owner_of(event)
            if not owner:
                logger.warning(f"Event {event.event_id} has no owner in any field; left as is")
                continue
            if event.owner_id is None:
                event.owner_id = owner
            for field in LEGACY_FIELDS:
                if getattr(event, field) is None:
                    setattr(event, field, owner)
            touched += 1
    logger.info(f"Backfilled owner fields on {touched} events")
    return touched
