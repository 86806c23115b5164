from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import JSON, Boolean, Float, Integer, String, Text
from snapmatch.db import Base, UTCDateTime, utcnow

# Reserved AttendeeMatch.event_id holding a user's profile selfie
DEFAULT_EVENT_ID = "default"


class Event(Base):
    __tablename__ = "events"
    event_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="Untitled Event")
    date: Mapped[str] = mapped_column(String(64), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    cover_image: Mapped[str] = mapped_column(String(1024), default="")
    event_url: Mapped[str] = mapped_column(String(1024), default="")

    photo_count: Mapped[int] = mapped_column(Integer, default=0)
    video_count: Mapped[int] = mapped_column(Integer, default=0)
    guest_count: Mapped[int] = mapped_column(Integer, default=0)
    total_image_size: Mapped[float] = mapped_column(Float, default=0.0)
    total_image_size_unit: Mapped[str] = mapped_column(String(2), default="MB")
    total_compressed_size: Mapped[float] = mapped_column(Float, default=0.0)
    total_compressed_size_unit: Mapped[str] = mapped_column(String(2), default="MB")

    # Canonical owner; the three legacy fields below are kept for old rows
    owner_id: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    organizer_id: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)

    organization_code: Mapped[str | None] = mapped_column(String(16), index=True, nullable=True)
    organization_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email_access: Mapped[list] = mapped_column(JSON, default=list)
    anyone_can_upload: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at = mapped_column(UTCDateTime, default=utcnow)
    updated_at = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class User(Base):
    __tablename__ = "users"
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), index=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    mobile: Mapped[str] = mapped_column(String(32), default="")
    role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_events: Mapped[list] = mapped_column(JSON, default=list)
    organization_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    organization_code: Mapped[str | None] = mapped_column(String(16), index=True, nullable=True)
    organization_logo: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at = mapped_column(UTCDateTime, default=utcnow)
    updated_at = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class AttendeeMatch(Base):
    __tablename__ = "attendee_matches"
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(16), primary_key=True, index=True)
    event_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cover_image: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    selfie_url: Mapped[str] = mapped_column(String(1024), default="")
    matched_images: Mapped[list] = mapped_column(JSON, default=list)
    uploaded_at = mapped_column(UTCDateTime, default=utcnow)
    last_updated = mapped_column(UTCDateTime, default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class OrgLink(Base):
    __tablename__ = "org_links"
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    organization_code: Mapped[str] = mapped_column(String(16), primary_key=True)
    joined_at = mapped_column(UTCDateTime, default=utcnow)
