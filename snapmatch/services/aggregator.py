# snapmatch/services/aggregator.py
import logging

from snapmatch.exceptions import ValidationError
from snapmatch.models import Event
from snapmatch.schemas import EventRecord, UserTotals
from snapmatch.services.events import count_attendees, mutate_event
from snapmatch.services.ownership import events_owned_by
from snapmatch.services.sizes import add_sizes, subtract_sizes, to_appropriate_unit

logger = logging.getLogger("snapmatch.aggregator")


def sum_event_totals(events: list[EventRecord]) -> UserTotals:
    """Sums counters and sizes over events already deduplicated by id."""
    totals = UserTotals(event_count=len(events))
    for event in events:
        totals.photo_count += event.photo_count or 0
        totals.video_count += event.video_count or 0
        totals.guest_count += event.guest_count or 0
        size = add_sizes(
            totals.total_image_size,
            totals.total_image_size_unit,
            event.total_image_size or 0.0,
            event.total_image_size_unit,
        )
        totals.total_image_size, totals.total_image_size_unit = size.size, size.unit
    return totals


def aggregate_for_user(session_factory, user_id: str) -> UserTotals:
    """Totals over every event the user owns under any ownership field."""
    events = events_owned_by(session_factory, user_id)
    return sum_event_totals(events)


def record_upload(
    session_factory,
    event_id: str,
    count: int,
    num_bytes: int,
    compressed_bytes: int | None = None,
    max_retries: int = 5,
) -> EventRecord:
    """Adds an upload batch to the event's photo count and sizes."""
    if count < 0 or num_bytes < 0:
        raise ValidationError("upload count and size must not be negative")
    added = to_appropriate_unit(num_bytes)
    added_compressed = to_appropriate_unit(compressed_bytes) if compressed_bytes else None

    def apply(event: Event) -> None:
        event.photo_count = (event.photo_count or 0) + count
        total = add_sizes(
            event.total_image_size or 0.0, event.total_image_size_unit or "MB", added.size, added.unit
        )
        event.total_image_size, event.total_image_size_unit = total.size, total.unit
        if added_compressed is not None:
            compressed = add_sizes(
                event.total_compressed_size or 0.0,
                event.total_compressed_size_unit or "MB",
                added_compressed.size,
                added_compressed.unit,
            )
            event.total_compressed_size, event.total_compressed_size_unit = compressed.size, compressed.unit

    record = mutate_event(session_factory, event_id, apply, max_retries=max_retries)
    logger.info(
        f"Event {event_id}: +{count} photos, now {record.photo_count} "
        f"({record.total_image_size} {record.total_image_size_unit})"
    )
    return record


def record_delete(session_factory, event_id: str, num_bytes: int, max_retries: int = 5) -> EventRecord:
    """Takes one deleted photo off the event's count and size, never below zero."""
    removed = to_appropriate_unit(num_bytes)

    def apply(event: Event) -> None:
        event.photo_count = max(0, (event.photo_count or 0) - 1)
        total = subtract_sizes(
            event.total_image_size or 0.0, event.total_image_size_unit or "MB", removed.size, removed.unit
        )
        event.total_image_size, event.total_image_size_unit = total.size, total.unit

    return mutate_event(session_factory, event_id, apply, max_retries=max_retries)


def refresh_guest_count(session_factory, event_id: str, max_retries: int = 5) -> EventRecord:
    """Sets guest_count to the number of attendees holding matches for the event."""
    guests = count_attendees(session_factory, event_id)

    def apply(event: Event) -> None:
        event.guest_count = guests

    return mutate_event(session_factory, event_id, apply, max_retries=max_retries)
