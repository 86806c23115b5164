# snapmatch/services/matching.py
"""Selfie to event photos: search, filter, merge, refresh.

Nothing here retries. A failure is raised to the caller, who decides
whether to try again.
"""
import logging
import time

from snapmatch.context import AppContext
from snapmatch.exceptions import (
    ExternalServiceError,
    NoMatchFound,
    PartialFailure,
    SnapmatchError,
    ValidationError,
)
from snapmatch.models import DEFAULT_EVENT_ID
from snapmatch.schemas import EventRecord, FaceMatch, FanOutReport, MatchResult
from snapmatch.services.aggregator import aggregate_for_user, refresh_guest_count
from snapmatch.services.catalog import sanitize_filename
from snapmatch.services.events import require_event
from snapmatch.services.index import collection_id
from snapmatch.services.matches import (
    MatchEntry,
    fan_out_selfie_update,
    latest_selfie_url,
    list_for_user,
    merge_match,
    statistics_for_user,
    store_default_selfie,
)
from snapmatch.services.ownership import owner_of
from snapmatch.services.storage import event_images_prefix, selfie_prefix

logger = logging.getLogger("snapmatch.matching")


def filter_matches(matches: list[FaceMatch], threshold: float) -> list[FaceMatch]:
    return [m for m in matches if m.similarity >= threshold]


def match_selfie_to_event(
    ctx: AppContext,
    user_id: str,
    selfie_key: str,
    event: EventRecord,
    threshold: float | None = None,
) -> MatchResult:
    if not user_id or not selfie_key:
        raise ValidationError("user_id and selfie_key are required")
    threshold = ctx.settings.MATCH_THRESHOLD if threshold is None else threshold

    try:
        candidates = ctx.face_search.search(selfie_key, collection_id(event.event_id))
    except ExternalServiceError:
        raise
    except (RuntimeError, OSError, ValueError) as e:
        raise ExternalServiceError("face search", str(e)) from e

    survivors = filter_matches(candidates, threshold)
    logger.info(
        f"{user_id} in event {event.event_id}: {len(candidates)} candidates, "
        f"{len(survivors)} at or above {threshold}"
    )
    if not survivors:
        raise NoMatchFound(event.event_id)

    prefix = event_images_prefix(event.event_id)
    images = list(dict.fromkeys(
        ctx.blobs.url_for(f"{prefix}{m.image_key.rsplit('/', 1)[-1]}") for m in survivors
    ))
    entry = MatchEntry(
        user_id=user_id,
        event_id=event.event_id,
        selfie_url=ctx.blobs.url_for(selfie_key),
        matched_images=images,
        event_name=event.name,
        cover_image=event.cover_image,
    )
    if not merge_match(ctx.session_factory, entry, max_retries=ctx.settings.STATS_MAX_RETRIES):
        raise ExternalServiceError("document store", f"storing matches of {user_id} for {event.event_id} failed")

    try:
        refresh_guest_count(ctx.session_factory, event.event_id, max_retries=ctx.settings.STATS_MAX_RETRIES)
        statistics = statistics_for_user(ctx.session_factory, user_id)
        owner = owner_of(event)
        organizer_totals = aggregate_for_user(ctx.session_factory, owner) if owner else None
    except SnapmatchError as e:
        raise PartialFailure(["match merge"], "statistics refresh", str(e)) from e

    return MatchResult(
        event_id=event.event_id,
        images=images,
        count=len(images),
        statistics=statistics,
        organizer_totals=organizer_totals,
    )


def match_selfie_to_event_id(
    ctx: AppContext, user_id: str, selfie_key: str, event_id: str, threshold: float | None = None
) -> MatchResult:
    event = require_event(ctx.session_factory, event_id)
    return match_selfie_to_event(ctx, user_id, selfie_key, event, threshold)


def resolve_selfie_key(ctx: AppContext, user_id: str, selfie: str | None = None) -> str:
    """Blob key of the selfie to match with.

    ``selfie`` may be a key or one of our blob URLs. Without one, the user's
    most recent selfie on record is used.
    """
    if not selfie:
        selfie = latest_selfie_url(ctx.session_factory, user_id)
        if not selfie:
            raise ValidationError(f"{user_id} has no selfie on record; upload one")
    if not selfie.startswith(("http://", "https://")):
        return selfie
    key = ctx.blobs.key_from_url(selfie)
    if key is None:
        raise ValidationError(f"selfie {selfie} is not stored in this account")
    return key


def upload_selfie(ctx: AppContext, user_id: str, filename: str, data: bytes, content_type: str = "image/jpeg") -> str:
    """Stores a selfie under the user's prefix and returns its blob key."""
    if not data:
        raise ValidationError("selfie is empty")
    key = f"{selfie_prefix(user_id)}selfie-{time.time_ns() // 1_000_000}-{sanitize_filename(filename)}"
    if ctx.blobs.upload(key, data, content_type) is None:
        raise ExternalServiceError("blob store", f"selfie upload for {user_id} failed")
    return key


def replace_selfie(
    ctx: AppContext, user_id: str, filename: str, data: bytes, content_type: str = "image/jpeg"
) -> tuple[str, FanOutReport]:
    """Uploads a new selfie and points the user's match records at it.

    A user without any record gets the profile-level sentinel record instead.
    """
    key = upload_selfie(ctx, user_id, filename, data, content_type)
    url = ctx.blobs.url_for(key)
    if list_for_user(ctx.session_factory, user_id):
        report = fan_out_selfie_update(
            ctx.session_factory, user_id, url, max_workers=ctx.settings.FANOUT_MAX_WORKERS
        )
        if not report.ok:
            logger.warning(f"Selfie of {user_id} stale on events {sorted(report.failed)}")
        return key, report
    if not store_default_selfie(ctx.session_factory, user_id, url):
        raise PartialFailure(["selfie upload"], "profile selfie record")
    return key, FanOutReport(succeeded=[DEFAULT_EVENT_ID])
