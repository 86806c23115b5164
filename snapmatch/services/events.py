# snapmatch/services/events.py
import logging
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from snapmatch.context import AppContext
from snapmatch.db import session_scope
from snapmatch.exceptions import ConcurrencyConflict, ExternalServiceError, NotFoundError, ValidationError
from snapmatch.models import AttendeeMatch, Event, User
from snapmatch.schemas import EventRecord
from snapmatch.services.allocator import allocate_event_id
from snapmatch.services.ownership import stamp_owner

logger = logging.getLogger("snapmatch.events")

# Fields an organizer may edit directly; counters and sizes move only
# through the aggregator.
EDITABLE_FIELDS = {
    "name",
    "date",
    "description",
    "cover_image",
    "event_url",
    "email_access",
    "anyone_can_upload",
    "video_count",
}


def get_event(session_factory, event_id: str) -> EventRecord | None:
    try:
        with session_scope(session_factory) as db:
            event = db.get(Event, event_id)
            return EventRecord.model_validate(event) if event else None
    except SQLAlchemyError as e:
        logger.error(f"Error getting event {event_id}: {e}")
        return None


def require_event(session_factory, event_id: str) -> EventRecord:
    event = get_event(session_factory, event_id)
    if event is None:
        raise NotFoundError("Event", event_id)
    return event


def mutate_event(
    session_factory,
    event_id: str,
    mutate: Callable[[Event], None],
    max_retries: int = 5,
) -> EventRecord:
    """Read-modify-write of one event under its version column.

    A concurrent writer bumps ``version`` first and makes our flush stale;
    the whole read-modify-write is then replayed, ``max_retries`` times at most.
    """
    for attempt in range(1, max_retries + 1):
        try:
            with session_scope(session_factory) as db:
                event = db.get(Event, event_id)
                if event is None:
                    raise NotFoundError("Event", event_id)
                mutate(event)
                db.flush()
                return EventRecord.model_validate(event)
        except StaleDataError:
            logger.info(f"Event {event_id} changed concurrently, retrying ({attempt}/{max_retries})")
        except SQLAlchemyError as e:
            raise ExternalServiceError("document store", f"update of event {event_id} failed: {e}") from e
    raise ConcurrencyConflict("Event", event_id, max_retries)


def create_event(
    ctx: AppContext,
    owner: str,
    name: str,
    date: str = "",
    description: str = "",
    cover_image: str = "",
    email_access: list[str] | None = None,
    anyone_can_upload: bool = False,
    event_id: str | None = None,
) -> EventRecord:
    if not owner:
        raise ValidationError("an event needs an owner")
    if event_id is None:
        event_id = allocate_event_id(
            ctx.session_factory,
            max_attempts=ctx.settings.EVENT_ID_MAX_ATTEMPTS,
            strict=ctx.settings.STRICT_ID_ALLOCATION,
        )
    try:
        with session_scope(ctx.session_factory) as db:
            user = db.get(User, owner)
            event = Event(
                event_id=event_id,
                name=name or "Untitled Event",
                date=date,
                description=description,
                cover_image=cover_image,
                email_access=list(dict.fromkeys(email_access or [])),
                anyone_can_upload=anyone_can_upload,
                organization_code=user.organization_code if user else None,
                organization_name=user.organization_name if user else None,
                total_image_size_unit="MB",
                total_compressed_size_unit="MB",
            )
            stamp_owner(event, owner)
            db.add(event)
            if user is not None and event_id not in (user.created_events or []):
                user.created_events = [*(user.created_events or []), event_id]
            db.flush()
            record = EventRecord.model_validate(event)
    except IntegrityError as e:
        raise ValidationError(f"event id {event_id} is already in use") from e
    except SQLAlchemyError as e:
        raise ExternalServiceError("document store", f"storing event {event_id} failed: {e}") from e
    logger.info(f"Created event {event_id} ('{record.name}') for {owner}")
    return record


def update_event(session_factory, event_id: str, updates: dict, max_retries: int = 5) -> EventRecord:
    unknown = set(updates) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"fields not editable: {', '.join(sorted(unknown))}")
    if "video_count" in updates:
        count = updates["video_count"]
        if not isinstance(count, int) or isinstance(count, bool):
            raise ValidationError(f"video_count must be a whole number, got {count!r}")
        if count < 0:
            raise ValidationError("video_count cannot be negative")

    def apply(event: Event) -> None:
        for field, value in updates.items():
            if field == "email_access":
                value = list(dict.fromkeys(value or []))
            setattr(event, field, value)

    return mutate_event(session_factory, event_id, apply, max_retries=max_retries)


def set_cover_image(session_factory, event_id: str, url: str) -> EventRecord:
    return update_event(session_factory, event_id, {"cover_image": url})


def delete_event_record(session_factory, event_id: str) -> bool:
    """Deletes the event row. Attendee match records are left in place."""
    try:
        with session_scope(session_factory) as db:
            event = db.get(Event, event_id)
            if event is None:
                return False
            db.delete(event)
        return True
    except SQLAlchemyError as e:
        logger.error(f"Error deleting event {event_id}: {e}")
        return False


def count_attendees(session_factory, event_id: str) -> int:
    with session_scope(session_factory) as db:
        return db.execute(
            select(func.count()).select_from(AttendeeMatch).where(AttendeeMatch.event_id == event_id)
        ).scalar_one()

