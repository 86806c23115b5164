# snapmatch/services/organizations.py
"""Users, organizer organizations and the attendee-organization links."""
import logging
import time

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from snapmatch.context import AppContext
from snapmatch.db import session_scope, utcnow
from snapmatch.exceptions import ExternalServiceError, NotFoundError, PartialFailure, ValidationError
from snapmatch.models import Event, OrgLink, User
from snapmatch.schemas import EventSummary, OrganizationSummary, UserRecord
from snapmatch.services.allocator import allocate_organization_code
from snapmatch.services.catalog import sanitize_filename
from snapmatch.services.ownership import owned_event_rows
from snapmatch.services.storage import logo_prefix

logger = logging.getLogger("snapmatch.organizations")


def get_user(session_factory, user_id: str) -> UserRecord | None:
    try:
        with session_scope(session_factory) as db:
            user = db.get(User, user_id)
            return UserRecord.model_validate(user) if user else None
    except SQLAlchemyError as e:
        logger.error(f"Error getting user {user_id}: {e}")
        return None


def find_user_by_email(session_factory, email: str) -> UserRecord | None:
    try:
        with session_scope(session_factory) as db:
            user = db.execute(select(User).where(User.email == email).limit(1)).scalars().first()
            return UserRecord.model_validate(user) if user else None
    except SQLAlchemyError as e:
        logger.error(f"Error scanning for user by email {email}: {e}")
        return None


def upsert_user(
    session_factory,
    user_id: str,
    email: str,
    name: str = "",
    mobile: str = "",
    role: str | None = None,
    created_events: list[str] | None = None,
    organization_name: str | None = None,
    organization_code: str | None = None,
    organization_logo: str | None = None,
) -> bool:
    """Creates or refreshes a user.

    Incoming values win over stored ones when given. ``created_events`` grows
    by union. An organization code, once set, is never replaced here.
    """
    if not user_id or not email:
        raise ValidationError("user_id and email are required")
    try:
        with session_scope(session_factory) as db:
            user = db.get(User, user_id)
            if user is None:
                db.add(
                    User(
                        user_id=user_id,
                        email=email,
                        name=name,
                        mobile=mobile,
                        role=role,
                        created_events=list(dict.fromkeys(created_events or [])),
                        organization_name=organization_name,
                        organization_code=organization_code,
                        organization_logo=organization_logo,
                    )
                )
                return True
            user.email = email
            user.name = name or user.name
            user.mobile = mobile or user.mobile
            user.role = role or user.role
            user.organization_name = organization_name or user.organization_name
            user.organization_code = user.organization_code or organization_code
            user.organization_logo = organization_logo or user.organization_logo
            if created_events:
                user.created_events = list(dict.fromkeys([*(user.created_events or []), *created_events]))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Error storing user {user_id}: {e}")
        return False


def ensure_organization(
    ctx: AppContext, user_id: str, organization_name: str, organization_logo: str | None = None
) -> UserRecord:
    """Gives an organizer an organization code and tags their events with it."""
    user = get_user(ctx.session_factory, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    code = user.organization_code or allocate_organization_code(
        ctx.session_factory,
        max_attempts=ctx.settings.EVENT_ID_MAX_ATTEMPTS,
        strict=ctx.settings.STRICT_ID_ALLOCATION,
    )
    try:
        with session_scope(ctx.session_factory) as db:
            row = db.get(User, user_id)
            row.organization_code = code
            row.organization_name = organization_name or row.organization_name
            row.organization_logo = organization_logo or row.organization_logo
            db.flush()
            user = UserRecord.model_validate(row)
    except SQLAlchemyError as e:
        raise ExternalServiceError("document store", f"storing organization for {user_id} failed: {e}") from e
    stamp_organization_on_events(ctx.session_factory, user_id, code, user.organization_name)
    return user


def upload_logo(
    ctx: AppContext, user_id: str, filename: str, data: bytes, content_type: str = "image/png"
) -> UserRecord:
    """Stores an organizer's logo and points their organization at it."""
    if not data:
        raise ValidationError("logo is empty")
    if get_user(ctx.session_factory, user_id) is None:
        raise NotFoundError("User", user_id)
    key = f"{logo_prefix(user_id)}logo-{time.time_ns() // 1_000_000}-{sanitize_filename(filename)}"
    url = ctx.blobs.upload(key, data, content_type)
    if url is None:
        raise ExternalServiceError("blob store", f"logo upload for {user_id} failed")
    try:
        with session_scope(ctx.session_factory) as db:
            row = db.get(User, user_id)
            row.organization_logo = url
            db.flush()
            user = UserRecord.model_validate(row)
    except SQLAlchemyError as e:
        raise PartialFailure(["logo upload"], "user record", str(e)) from e
    logger.info(f"Logo of {user_id} stored at {key}")
    return user


def stamp_organization_on_events(
    session_factory, owner: str, organization_code: str, organization_name: str | None = None
) -> int:
    with session_scope(session_factory) as db:
        events = owned_event_rows(db, owner)
        for event in events:
            event.organization_code = organization_code
            if organization_name:
                event.organization_name = organization_name
    logger.info(f"Tagged {len(events)} events of {owner} with organization {organization_code}")
    return len(events)


def rename_organization(session_factory, organization_code: str, new_name: str) -> int:
    if not new_name:
        raise ValidationError("organization name is required")
    with session_scope(session_factory) as db:
        events = db.execute(select(Event).where(Event.organization_code == organization_code)).scalars().all()
        for event in events:
            event.organization_name = new_name
        for user in db.execute(select(User).where(User.organization_code == organization_code)).scalars():
            user.organization_name = new_name
    logger.info(f"Renamed organization {organization_code} to '{new_name}' across {len(events)} events")
    return len(events)


def find_organization(session_factory, organization_code: str) -> OrganizationSummary | None:
    with session_scope(session_factory) as db:
        user = db.execute(
            select(User).where(User.organization_code == organization_code).limit(1)
        ).scalars().first()
        if user is None:
            return None
        return OrganizationSummary(
            organization_code=user.organization_code,
            organization_name=user.organization_name,
            organization_logo=user.organization_logo,
        )


def join_organization(session_factory, user_id: str, organization_code: str) -> OrganizationSummary:
    if not user_id or not organization_code:
        raise ValidationError("user_id and organization_code are required")
    org = find_organization(session_factory, organization_code)
    if org is None:
        raise NotFoundError("Organization", organization_code)
    with session_scope(session_factory) as db:
        link = db.get(OrgLink, (user_id, organization_code))
        if link is None:
            link = OrgLink(user_id=user_id, organization_code=organization_code, joined_at=utcnow())
            db.add(link)
            db.flush()
        org.joined_at = link.joined_at
    return org


def leave_organization(session_factory, user_id: str, organization_code: str) -> bool:
    with session_scope(session_factory) as db:
        link = db.get(OrgLink, (user_id, organization_code))
        if link is None:
            return False
        db.delete(link)
    return True


def organizations_for_attendee(session_factory, user_id: str) -> list[OrganizationSummary]:
    with session_scope(session_factory) as db:
        links = db.execute(select(OrgLink).where(OrgLink.user_id == user_id)).scalars().all()
        joined = [(link.organization_code, link.joined_at) for link in links]
    organizations = []
    for code, joined_at in joined:
        org = find_organization(session_factory, code)
        if org is None:
            # Organizer removed their organization; drop the dangling link from the view
            continue
        org.joined_at = joined_at
        organizations.append(org)
    return organizations


def events_for_organization(session_factory, organization_code: str) -> list[EventSummary]:
    """Events tagged with the code, falling back to the organizer's own events."""
    with session_scope(session_factory) as db:
        events = db.execute(select(Event).where(Event.organization_code == organization_code)).scalars().all()
        if not events:
            organizer = db.execute(
                select(User).where(User.organization_code == organization_code).limit(1)
            ).scalars().first()
            if organizer is not None:
                events = owned_event_rows(db, organizer.user_id)
        return [
            EventSummary(event_id=e.event_id, name=e.name, date=e.date or "", cover_image=e.cover_image or "")
            for e in events
        ]
