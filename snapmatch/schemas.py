# snapmatch/schemas.py
"""Typed records crossing the store boundary, and service result types."""
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SizeUnit = Literal["MB", "GB"]


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class EventRecord(_Record):
    event_id: str
    name: str = "Untitled Event"
    date: str = ""
    description: str = ""
    cover_image: str = ""
    event_url: str = ""
    photo_count: int = 0
    video_count: int = 0
    guest_count: int = 0
    total_image_size: float = 0.0
    total_image_size_unit: SizeUnit = "MB"
    total_compressed_size: float = 0.0
    total_compressed_size_unit: SizeUnit = "MB"
    owner_id: str | None = None
    user_email: str | None = None
    organizer_id: str | None = None
    user_id: str | None = None
    organization_code: str | None = None
    organization_name: str | None = None
    email_access: list[str] = Field(default_factory=list)
    anyone_can_upload: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("name", "date", "description", "cover_image", "event_url", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("photo_count", "video_count", "guest_count", mode="before")
    @classmethod
    def _none_to_zero(cls, value):
        return 0 if value is None else value

    @field_validator("email_access", mode="before")
    @classmethod
    def _dedupe_access(cls, value):
        return list(dict.fromkeys(value or []))


class UserRecord(_Record):
    user_id: str
    email: str
    name: str = ""
    mobile: str = ""
    role: str | None = None
    created_events: list[str] = Field(default_factory=list)
    organization_name: str | None = None
    organization_code: str | None = None
    organization_logo: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("created_events", mode="before")
    @classmethod
    def _none_to_list(cls, value):
        return value or []


class AttendeeMatchRecord(_Record):
    user_id: str
    event_id: str
    event_name: str | None = None
    cover_image: str | None = None
    selfie_url: str = ""
    matched_images: list[str] = Field(default_factory=list)
    uploaded_at: datetime | None = None
    last_updated: datetime | None = None

    @field_validator("matched_images", mode="before")
    @classmethod
    def _none_to_list(cls, value):
        return value or []


class OrgLinkRecord(_Record):
    user_id: str
    organization_code: str
    joined_at: datetime | None = None


class SizeQuantity(BaseModel):
    size: float
    unit: SizeUnit


class UserTotals(BaseModel):
    event_count: int = 0
    photo_count: int = 0
    video_count: int = 0
    guest_count: int = 0
    total_image_size: float = 0.0
    total_image_size_unit: SizeUnit = "MB"


class AttendeeStatistics(BaseModel):
    total_events: int = 0
    total_images: int = 0
    first_event_date: datetime | None = None
    latest_event_date: datetime | None = None


class StoredImage(BaseModel):
    key: str
    url: str
    size: int | None = None


class ImagePage(BaseModel):
    images: list[StoredImage]
    next_page_token: str | None = None


class DeleteResult(BaseModel):
    key: str
    deleted_bytes: int
    photo_count: int
    total_image_size: float
    total_image_size_unit: SizeUnit


class UploadFailure(BaseModel):
    filename: str
    error: str


class UploadResult(BaseModel):
    uploaded: list[StoredImage] = Field(default_factory=list)
    failed: list[UploadFailure] = Field(default_factory=list)
    indexed: int = 0


class FaceMatch(BaseModel):
    image_key: str
    similarity: float = Field(ge=0, le=100)


class IndexReport(BaseModel):
    successful: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


class MatchResult(BaseModel):
    event_id: str
    images: list[str]
    count: int
    statistics: AttendeeStatistics
    organizer_totals: UserTotals | None = None


class FanOutReport(BaseModel):
    succeeded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class OrganizationSummary(BaseModel):
    organization_code: str
    organization_name: str | None = None
    organization_logo: str | None = None
    joined_at: datetime | None = None


class EventSummary(BaseModel):
    event_id: str
    name: str
    date: str = ""
    cover_image: str = ""
