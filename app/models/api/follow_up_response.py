# app/models/api/follow_up_response.py
"""
Follow-up API response models.
Used by routes for output formatting.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class FollowUpContactResponse(BaseModel):
    """One contact inside a follow-up bucket."""

    id: str = Field(..., description="Contact ID")
    name: str | None = Field(None, description="Contact name")
    phone_number: str | None = Field(None, description="Contact phone number")
    status: str = Field(..., description="Pipeline status")
    labels: list[str] = Field(default_factory=list, description="Contact labels")
    created_at: datetime | None = Field(None, description="When the contact was created")
    last_activity_at: datetime | None = Field(
        None, description="Latest confirmed or optimistic activity"
    )


class BucketPageResponse(BaseModel):
    """One page of one follow-up bucket."""

    bucket: str = Field(..., description="Bucket name")
    items: list[FollowUpContactResponse] = Field(..., description="Contacts on this page")
    page: int = Field(..., description="1-based page number")
    page_size: int = Field(..., description="Page size")
    total_count: int = Field(..., description="Contacts in the whole bucket")
    total_pages: int = Field(..., description="Number of pages in the bucket")


class FollowUpsResponse(BaseModel):
    """First page of every follow-up bucket."""

    available: bool = Field(
        ...,
        description="False when the result is not computed yet; empty buckets then mean unknown",
    )
    from_cache: bool = Field(default=False, description="Served from a cached calculation")
    calculated_at: datetime | None = Field(None, description="When the buckets were calculated")
    notices: list[str] = Field(default_factory=list, description="Soft degradation notices")
    counts: dict[str, int] = Field(..., description="Contacts per bucket")
    buckets: dict[str, BucketPageResponse] = Field(..., description="First page per bucket")


class BucketResponse(BucketPageResponse):
    """A single bucket page with the availability of the underlying result."""

    available: bool = Field(..., description="Whether the underlying result is computed")
    notices: list[str] = Field(default_factory=list, description="Soft degradation notices")


class PendingActivityResponse(BaseModel):
    """An optimistic activity waiting for (or just past) database confirmation."""

    id: str = Field(..., description="Optimistic activity ID")
    contact_id: str = Field(..., description="Contact ID")
    type: str = Field(..., description="Activity type")
    details: str | None = Field(None, description="Free-text notes")
    timestamp: datetime = Field(..., description="When the activity happened")
    local_timestamp: datetime = Field(..., description="When the activity was logged")
    sync_status: str = Field(..., description="pending, succeeded or failed")
    error: str | None = Field(None, description="Persistence error, when failed")


class PendingActivitiesResponse(BaseModel):
    """Optimistic activities of the caller."""

    activities: list[PendingActivityResponse] = Field(..., description="Overlay entries")
    counts: dict[str, int] = Field(..., description="Entries per sync status")


class FollowUpStatusResponse(BaseModel):
    """Calculation, cache and overlay status for the caller."""

    calculation_status: str = Field(..., description="never, fresh, idle or stale")
    last_calculated_at: datetime | None = Field(None, description="Last completed calculation")
    time_until_next_seconds: float = Field(
        ..., description="Seconds until the idle gate allows a recalculation"
    )
    progress: dict[str, Any] | None = Field(None, description="Last reported calculation progress")
    cache: dict[str, Any] = Field(..., description="In-memory cache statistics")
    pending_activities: dict[str, int] = Field(..., description="Overlay entries per sync status")


class CacheClearResponse(BaseModel):
    """Result of clearing the caller's follow-up caches."""

    cleared: bool = Field(..., description="Whether caches were cleared")
    memory_entries: int = Field(..., description="In-memory entries dropped")
    persisted_rows: int = Field(..., description="Persisted rows deleted")
