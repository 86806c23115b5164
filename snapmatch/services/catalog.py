# snapmatch/services/catalog.py
"""Stored images of an event: listing, presentation dedup, upload, delete.

Uploaded images are stored as ``{timestamp}-{filename}``. Uploading the same
file twice therefore leaves two blobs; the gallery hides the later ones by
comparing the names with the timestamp stripped, storage keeps both.
"""
import logging
import re
import time
from typing import Iterable, TypeVar

from snapmatch.context import AppContext
from snapmatch.exceptions import (
    ExternalServiceError,
    NotFoundError,
    PartialFailure,
    SnapmatchError,
    ValidationError,
)
from snapmatch.schemas import DeleteResult, ImagePage, StoredImage, UploadFailure, UploadResult
from snapmatch.services.aggregator import record_delete, record_upload
from snapmatch.services.events import delete_event_record, require_event, set_cover_image
from snapmatch.services.storage import event_cover_key, event_images_prefix, event_prefix

logger = logging.getLogger("snapmatch.catalog")

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")

_TIMESTAMPED = re.compile(r"^\d+-(.+)$")
_PAREN_SUFFIX = re.compile(r"\(\d+\)$")

T = TypeVar("T", str, StoredImage)


def is_image_key(key: str) -> bool:
    return key.lower().endswith(IMAGE_EXTENSIONS)


def canonical_identity(key: str) -> str:
    """Basename without its leading ``<digits>-`` token, lower-cased.

    Keys without the token are their own identity.
    """
    basename = key.rsplit("/", 1)[-1]
    m = _TIMESTAMPED.match(basename)
    return m.group(1).lower() if m else key


def _dedup_key(key: str) -> tuple[bool, str]:
    # Untimestamped keys live in their own namespace so they never collide
    # with a stripped name.
    m = _TIMESTAMPED.match(key.rsplit("/", 1)[-1])
    return (True, m.group(1).lower()) if m else (False, key)


def deduplicate(images: Iterable[T]) -> list[T]:
    """First image per canonical identity, in listing order."""
    seen: set[tuple[bool, str]] = set()
    kept = []
    for image in images:
        key = image if isinstance(image, str) else image.key
        identity = _dedup_key(key)
        if identity in seen:
            continue
        seen.add(identity)
        kept.append(image)
    return kept


def sanitize_filename(filename: str) -> str:
    m = _PAREN_SUFFIX.search(filename)
    suffix = m.group(0) if m else ""
    base = _PAREN_SUFFIX.sub("", filename)
    base = re.sub(r"[^a-zA-Z0-9_.\-:]", "_", base)
    base = re.sub(r"_{2,}", "_", base).strip("_")
    return f"{base}{suffix}" or "image.jpg"


def _stored(ctx: AppContext, items: list[tuple[str, int]]) -> list[StoredImage]:
    return [
        StoredImage(key=key, url=ctx.blobs.url_for(key), size=size)
        for key, size in items
        if is_image_key(key)
    ]


def list_images(ctx: AppContext, event_id: str, page_token: str | None = None) -> ImagePage:
    result = ctx.blobs.list_page(event_images_prefix(event_id), ctx.settings.IMAGES_PER_PAGE, page_token)
    if result is None:
        raise ExternalServiceError("blob store", f"listing images of event {event_id} failed")
    items, next_token = result
    return ImagePage(images=_stored(ctx, items), next_page_token=next_token)


def list_all_images(ctx: AppContext, event_id: str) -> list[StoredImage]:
    images: list[StoredImage] = []
    token = None
    while True:
        page = list_images(ctx, event_id, token)
        images.extend(page.images)
        token = page.next_page_token
        if not token:
            return images


def gallery(ctx: AppContext, event_id: str) -> list[StoredImage]:
    """Every image of the event as attendees see it, duplicates hidden."""
    return deduplicate(list_all_images(ctx, event_id))


def upload_images(ctx: AppContext, event_id: str, files: list[tuple[str, bytes, str]]) -> UploadResult:
    """Stores ``(filename, data, content_type)`` files and books them on the event."""
    require_event(ctx.session_factory, event_id)
    result = UploadResult()
    total_bytes = 0
    base_ms = time.time_ns() // 1_000_000
    for position, (filename, data, content_type) in enumerate(files):
        if not data:
            result.failed.append(UploadFailure(filename=filename, error="empty file"))
            continue
        key = f"{event_images_prefix(event_id)}{base_ms + position}-{sanitize_filename(filename)}"
        url = ctx.blobs.upload(key, data, content_type or "image/jpeg")
        if url is None:
            result.failed.append(UploadFailure(filename=filename, error="upload failed"))
            continue
        total_bytes += len(data)
        result.uploaded.append(StoredImage(key=key, url=url, size=len(data)))

    if not result.uploaded:
        return result

    try:
        record_upload(
            ctx.session_factory,
            event_id,
            len(result.uploaded),
            total_bytes,
            max_retries=ctx.settings.STATS_MAX_RETRIES,
        )
    except SnapmatchError as e:
        raise PartialFailure(["blob upload"], "event statistics update", str(e)) from e

    keys = [image.key for image in result.uploaded]
    try:
        report = ctx.face_search.index_faces(event_id, keys)
        result.indexed = len(report.successful)
        for key, error in report.failed.items():
            logger.warning(f"Face indexing failed for {key}: {error}")
    except SnapmatchError as e:
        # Photos stay stored and counted; the collection is rebuilt on next search
        logger.error(f"Error during face indexing for event {event_id}: {e}")
    logger.info(
        f"Event {event_id}: uploaded {len(result.uploaded)}, failed {len(result.failed)}, "
        f"indexed {result.indexed}"
    )
    return result


def upload_cover(ctx: AppContext, event_id: str, data: bytes, content_type: str = "image/jpeg") -> str:
    require_event(ctx.session_factory, event_id)
    url = ctx.blobs.upload(event_cover_key(event_id), data, content_type)
    if url is None:
        raise ExternalServiceError("blob store", f"cover upload for event {event_id} failed")
    try:
        set_cover_image(ctx.session_factory, event_id, url)
    except SnapmatchError as e:
        raise PartialFailure(["cover upload"], "event cover update", str(e)) from e
    return url


def delete_image(ctx: AppContext, event_id: str, key: str) -> DeleteResult:
    """Deletes one stored blob and takes it off the event's statistics.

    Other blobs sharing its canonical identity are not touched.
    """
    if not key.startswith(event_images_prefix(event_id)):
        raise ValidationError(f"{key} is not an image of event {event_id}")
    # The store does not report a size on delete, so read it first
    size = ctx.blobs.get_size(key)
    if size is None:
        raise NotFoundError("Image", key)
    if not ctx.blobs.delete(key):
        raise ExternalServiceError("blob store", f"delete of {key} failed")
    try:
        event = record_delete(ctx.session_factory, event_id, size, max_retries=ctx.settings.STATS_MAX_RETRIES)
    except SnapmatchError as e:
        raise PartialFailure(["blob delete"], "event statistics update", str(e)) from e
    try:
        ctx.face_search.remove_images(event_id, [key])
    except SnapmatchError as e:
        logger.warning(f"Faces of deleted image {key} remain in the collection: {e}")
    logger.info(f"Deleted {key} ({size} bytes) from event {event_id}")
    return DeleteResult(
        key=key,
        deleted_bytes=size,
        photo_count=event.photo_count,
        total_image_size=event.total_image_size,
        total_image_size_unit=event.total_image_size_unit,
    )


def delete_event(ctx: AppContext, event_id: str) -> int:
    """Deletes the event record, then every blob under the event, then its faces.

    Returns the number of blobs deleted.
    """
    require_event(ctx.session_factory, event_id)
    if not delete_event_record(ctx.session_factory, event_id):
        raise ExternalServiceError("document store", f"delete of event {event_id} failed")
    outcome = ctx.blobs.delete_prefix(event_prefix(event_id))
    if outcome is None:
        raise PartialFailure(["event record delete"], "blob cleanup", f"listing {event_prefix(event_id)} failed")
    deleted, failed = outcome
    if failed:
        raise PartialFailure(
            ["event record delete", f"{deleted} blob deletes"],
            "blob cleanup",
            f"{len(failed)} blobs left: {', '.join(failed[:5])}",
        )
    try:
        ctx.face_search.delete_collection(event_id)
    except SnapmatchError as e:
        logger.warning(f"Face collection of deleted event {event_id} not removed: {e}")
    logger.info(f"Deleted event {event_id} and {deleted} blobs")
    return deleted
