"""
Visit Analytics — Pydantic schemas for queue payloads and API responses.
"""

from datetime import date, datetime, timezone

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


class NormalizedEvent(BaseModel):
    """A validated page view decoded from the queue.

    The wire format is the camelCase JSON written by the tracker; required
    fields must be present and non-blank, everything else defaults to None.
    """

    path: str = Field(..., min_length=1, max_length=1024)
    timestamp: datetime
    visitor_id: str = Field(..., alias="visitorId", min_length=1, max_length=255)
    ip_address: str = Field(..., alias="ipAddress", min_length=1, max_length=64)
    user_agent: str | None = Field(None, alias="userAgent")
    referer: str | None = None
    country: str | None = None
    region: str | None = None
    city: str | None = None
    browser: str | None = None
    browser_version: str | None = Field(None, alias="browserVersion")
    os: str | None = None
    os_version: str | None = Field(None, alias="osVersion")
    device_type: str | None = Field(None, alias="deviceType")
    screen_size: str | None = Field(None, alias="screenSize")
    language: str | None = None
    timezone: str | None = None

    # Seconds until the visitor's next page view; 0 = not known yet
    duration: int = Field(0, ge=0)

    model_config = {"populate_by_name": True, "str_strip_whitespace": True}

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    def to_row(self) -> dict:
        """Column values for a ``page_views`` insert."""
        return self.model_dump(by_alias=False)


class TrackPageView(BaseModel):
    """Body of ``POST /analytics/track`` — the client-side half of a page view."""

    path: str = Field(..., min_length=1, max_length=1024)
    visitor_id: str = Field(..., alias="visitorId", min_length=1, max_length=255)
    referer: str | None = Field(None, max_length=1024)
    screen_size: str | None = Field(None, alias="screenSize", max_length=50)
    language: str | None = Field(None, max_length=50)
    timezone: str | None = Field(None, max_length=100)
    country: str | None = Field(None, max_length=100)
    region: str | None = Field(None, max_length=100)
    city: str | None = Field(None, max_length=100)
    browser: str | None = Field(None, max_length=100)
    browser_version: str | None = Field(None, alias="browserVersion", max_length=50)
    os: str | None = Field(None, max_length=100)
    os_version: str | None = Field(None, alias="osVersion", max_length=50)
    device_type: str | None = Field(None, alias="deviceType", max_length=50)

    model_config = {"populate_by_name": True}


class TrackResponse(BaseModel):
    queued: bool
    queue_length: int = 0
    flush_scheduled: bool = False


class FlushResult(BaseModel):
    """Outcome of one flush invocation, returned to whoever triggered it."""

    success: bool
    flushed_count: int = 0
    dropped_count: int = 0
    synced_view_count_rows: int = 0
    archived_date_groups: int = 0
    archived_raw_page_view_deleted: int = 0
    expired_archive_deleted: int = 0
    skipped: bool = False

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class ArchiveDay(BaseModel):
    date: date
    total_views: int
    unique_visitors: int
    total_sessions: int
    bounces: int
    total_duration: int
    path_stats: dict = {}
    referer_stats: dict = {}
    country_stats: dict = {}
    region_stats: dict = {}
    city_stats: dict = {}
    device_stats: dict = {}
    browser_stats: dict = {}
    os_stats: dict = {}
    screen_stats: dict = {}
    language_stats: dict = {}
    timezone_stats: dict = {}

    model_config = {"from_attributes": True}


class ViewCountEntry(BaseModel):
    path: str
    cached_count: int
    post_slug: str | None = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
