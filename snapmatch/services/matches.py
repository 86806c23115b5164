# snapmatch/services/matches.py
"""Which event photos matched which attendee.

One record per (user, event). ``matched_images`` only ever grows: every merge
is a set union with what is stored, duplicates dropped, stored order kept
and new references appended in the order given.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from snapmatch.db import session_scope, utcnow
from snapmatch.exceptions import ConcurrencyConflict, ValidationError
from snapmatch.models import DEFAULT_EVENT_ID, AttendeeMatch
from snapmatch.schemas import AttendeeMatchRecord, AttendeeStatistics, FanOutReport

logger = logging.getLogger("snapmatch.matches")


@dataclass
class MatchEntry:
    user_id: str
    event_id: str
    selfie_url: str
    matched_images: list[str] = field(default_factory=list)
    event_name: str | None = None
    cover_image: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


def union_images(existing: Iterable[str], incoming: Iterable[str]) -> list[str]:
    return list(dict.fromkeys([*existing, *incoming]))


def merge_match(session_factory, entry: MatchEntry, max_retries: int = 5) -> bool:
    """Unions ``entry`` into the stored record, creating it on first match.

    Runs under the record's version column: a concurrent merge that commits
    between our read and write makes the write stale, and a concurrent first
    insert makes ours collide on the key. Both replay the read-union-write.
    """
    if not entry.user_id or not entry.event_id:
        raise ValidationError("user_id and event_id are required")
    if not entry.selfie_url:
        raise ValidationError("selfie_url is required")
    for attempt in range(1, max_retries + 1):
        try:
            with session_scope(session_factory) as db:
                existing = db.get(AttendeeMatch, (entry.user_id, entry.event_id))
                if existing is None:
                    db.add(
                        AttendeeMatch(
                            user_id=entry.user_id,
                            event_id=entry.event_id,
                            event_name=entry.event_name,
                            cover_image=entry.cover_image,
                            selfie_url=entry.selfie_url,
                            matched_images=union_images([], entry.matched_images),
                            uploaded_at=entry.timestamp,
                            last_updated=entry.timestamp,
                        )
                    )
                    db.flush()
                    logger.info(
                        f"New match record {entry.user_id}/{entry.event_id} with {len(entry.matched_images)} images"
                    )
                    return True
                before = len(existing.matched_images or [])
                existing.matched_images = union_images(existing.matched_images or [], entry.matched_images)
                existing.selfie_url = entry.selfie_url or existing.selfie_url
                existing.event_name = entry.event_name or existing.event_name
                existing.cover_image = entry.cover_image or existing.cover_image
                existing.last_updated = entry.timestamp
                db.flush()
                logger.info(
                    f"Merged match record {entry.user_id}/{entry.event_id}: "
                    f"{before} -> {len(existing.matched_images)} images"
                )
            return True
        except (StaleDataError, IntegrityError):
            logger.info(
                f"Match record {entry.user_id}/{entry.event_id} changed concurrently, "
                f"retrying ({attempt}/{max_retries})"
            )
        except SQLAlchemyError as e:
            logger.error(f"Error storing attendee image data for {entry.user_id}/{entry.event_id}: {e}")
            return False
    raise ConcurrencyConflict("AttendeeMatch", f"{entry.user_id}/{entry.event_id}", max_retries)


def get_match(session_factory, user_id: str, event_id: str) -> AttendeeMatchRecord | None:
    try:
        with session_scope(session_factory) as db:
            row = db.get(AttendeeMatch, (user_id, event_id))
            return AttendeeMatchRecord.model_validate(row) if row else None
    except SQLAlchemyError as e:
        logger.error(f"Error getting attendee image data {user_id}/{event_id}: {e}")
        return None


def list_for_user(session_factory, user_id: str) -> list[AttendeeMatchRecord]:
    try:
        with session_scope(session_factory) as db:
            rows = db.execute(select(AttendeeMatch).where(AttendeeMatch.user_id == user_id)).scalars().all()
            return [AttendeeMatchRecord.model_validate(row) for row in rows]
    except SQLAlchemyError as e:
        logger.error(f"Error querying attendee image data for {user_id}: {e}")
        return []


def list_for_event(session_factory, event_id: str) -> list[AttendeeMatchRecord]:
    try:
        with session_scope(session_factory) as db:
            rows = db.execute(select(AttendeeMatch).where(AttendeeMatch.event_id == event_id)).scalars().all()
            return [AttendeeMatchRecord.model_validate(row) for row in rows]
    except SQLAlchemyError as e:
        logger.error(f"Error querying attendee image data for event {event_id}: {e}")
        return []


def distinct_attended_events(session_factory, user_id: str) -> list[str]:
    records = list_for_user(session_factory, user_id)
    return list(dict.fromkeys(r.event_id for r in records if r.event_id != DEFAULT_EVENT_ID))


def statistics_for_user(session_factory, user_id: str) -> AttendeeStatistics:
    records = [r for r in list_for_user(session_factory, user_id) if r.event_id != DEFAULT_EVENT_ID]
    if not records:
        return AttendeeStatistics()
    dates = sorted(r.uploaded_at for r in records if r.uploaded_at is not None)
    return AttendeeStatistics(
        total_events=len({r.event_id for r in records}),
        total_images=sum(len(r.matched_images) for r in records),
        first_event_date=dates[0] if dates else None,
        latest_event_date=dates[-1] if dates else None,
    )


def _update_selfie(session_factory, user_id: str, event_id: str, selfie_url: str, timestamp: datetime) -> None:
    with session_scope(session_factory) as db:
        row = db.get(AttendeeMatch, (user_id, event_id))
        if row is None:
            raise LookupError(f"record {user_id}/{event_id} disappeared")
        row.selfie_url = selfie_url
        row.last_updated = timestamp


def fan_out_selfie_update(
    session_factory, user_id: str, new_selfie_url: str, max_workers: int = 8
) -> FanOutReport:
    """Points every match record of the user at a new selfie.

    Updates run concurrently, one session each. Setting the same URL twice
    is harmless, so a caller can re-run the fan-out for the failed ids.
    Nothing is undone when some updates fail.
    """
    if not user_id or not new_selfie_url:
        raise ValidationError("user_id and new_selfie_url are required")
    event_ids = [r.event_id for r in list_for_user(session_factory, user_id)]
    report = FanOutReport()
    if not event_ids:
        logger.info(f"No events found for {user_id} to update selfie")
        return report
    timestamp = utcnow()
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(event_ids)))) as pool:
        futures = {
            pool.submit(_update_selfie, session_factory, user_id, event_id, new_selfie_url, timestamp): event_id
            for event_id in event_ids
        }
        for future in as_completed(futures):
            event_id = futures[future]
            try:
                future.result()
                report.succeeded.append(event_id)
            except (SQLAlchemyError, LookupError) as e:
                logger.error(f"Selfie update failed for {user_id}/{event_id}: {e}")
                report.failed[event_id] = str(e)
    report.succeeded.sort()
    logger.info(
        f"Selfie update for {user_id}: {len(report.succeeded)} updated, {len(report.failed)} failed"
    )
    return report


def store_default_selfie(session_factory, user_id: str, selfie_url: str) -> bool:
    """Stores the profile selfie in the sentinel record, replacing any previous one."""
    if not user_id or not selfie_url:
        raise ValidationError("user_id and selfie_url are required")
    now = utcnow()
    try:
        with session_scope(session_factory) as db:
            row = db.get(AttendeeMatch, (user_id, DEFAULT_EVENT_ID))
            if row is None:
                db.add(
                    AttendeeMatch(
                        user_id=user_id,
                        event_id=DEFAULT_EVENT_ID,
                        event_name="Default Profile",
                        cover_image=None,
                        selfie_url=selfie_url,
                        matched_images=[],
                        uploaded_at=now,
                        last_updated=now,
                    )
                )
            else:
                row.selfie_url = selfie_url
                row.last_updated = now
        return True
    except SQLAlchemyError as e:
        logger.error(f"Error storing default selfie for {user_id}: {e}")
        return False


def get_default_selfie(session_factory, user_id: str) -> str | None:
    record = get_match(session_factory, user_id, DEFAULT_EVENT_ID)
    return (record.selfie_url or None) if record else None


def latest_selfie_url(session_factory, user_id: str) -> str | None:
    records = [r for r in list_for_user(session_factory, user_id) if r.selfie_url]
    if not records:
        return None
    latest = max(records, key=lambda r: r.last_updated or r.uploaded_at)
    return latest.selfie_url
