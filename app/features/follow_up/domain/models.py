"""
Domain models for the follow-up feature.

Rows coming from Supabase are loosely shaped dicts; these dataclasses are
the validated shapes the classifier, cache and overlay work with. Anything
that crosses into this package goes through a ``from_row`` constructor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def ensure_utc(value: datetime | str | None) -> datetime | None:
    """Parse ISO strings and treat naive datetimes as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise ValueError(f"Expected datetime, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class StalenessBucket(str, Enum):
    NEEDS_APPROACH = "needs_approach"
    STALE_3_DAYS = "stale_3_days"
    STALE_7_DAYS = "stale_7_days"
    STALE_30_DAYS = "stale_30_days"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Contact:
    """CRM contact, read-only from the follow-up perspective."""

    id: str
    status: str
    labels: tuple[str, ...] = ()
    created_at: datetime | None = None
    name: str | None = None
    phone_number: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Contact:
        contact_id = row.get("id")
        if not contact_id:
            raise ValueError("Contact row is missing an id")
        labels = row.get("labels") or ()
        return cls(
            id=str(contact_id),
            status=row.get("status") or "",
            labels=tuple(str(label) for label in labels),
            created_at=ensure_utc(row.get("created_at")),
            name=row.get("name"),
            phone_number=row.get("phone_number"),
        )


@dataclass(frozen=True, slots=True)
class ActivitySummary:
    """Most recent confirmed activity for one contact."""

    has_activity: bool
    last_activity_at: datetime | None = None

    @classmethod
    def none(cls) -> ActivitySummary:
        return cls(has_activity=False, last_activity_at=None)


@dataclass(frozen=True, slots=True)
class ActivityRecord:
    """A persisted row of the activities table."""

    id: str
    contact_id: str
    type: str
    timestamp: datetime
    details: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ActivityRecord:
        return cls(
            id=str(row["id"]),
            contact_id=str(row["contact_id"]),
            type=row["type"],
            timestamp=ensure_utc(row["timestamp"]),
            details=row.get("details"),
        )


@dataclass(frozen=True, slots=True)
class ActivityDescriptor:
    """What the user logged: a call, a WhatsApp message, a meeting."""

    type: str
    details: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True, slots=True)
class OptimisticActivity:
    """An activity shown before the database confirmed it."""

    id: str
    user_id: str
    contact_id: str
    type: str
    timestamp: datetime
    local_timestamp: datetime
    details: str | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    error: str | None = None


@dataclass(frozen=True, slots=True)
class FollowUpContact:
    contact: Contact
    last_activity_at: datetime | None = None

    @property
    def id(self) -> str:
        return self.contact.id

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.contact.id,
            "status": self.contact.status,
            "labels": list(self.contact.labels),
            "created_at": self.contact.created_at.isoformat() if self.contact.created_at else None,
            "name": self.contact.name,
            "phone_number": self.contact.phone_number,
            "last_activity_at": (
                self.last_activity_at.isoformat() if self.last_activity_at else None
            ),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> FollowUpContact:
        if not isinstance(payload, dict):
            raise ValueError(f"Expected bucket item object, got {type(payload).__name__}")
        return cls(
            contact=Contact.from_row(payload),
            last_activity_at=ensure_utc(payload.get("last_activity_at")),
        )


@dataclass(frozen=True, slots=True)
class FollowUpBuckets:
    """The four follow-up lists. A contact sits in at most one of them."""

    needs_approach: tuple[FollowUpContact, ...] = ()
    stale_3_days: tuple[FollowUpContact, ...] = ()
    stale_7_days: tuple[FollowUpContact, ...] = ()
    stale_30_days: tuple[FollowUpContact, ...] = ()

    @classmethod
    def empty(cls) -> FollowUpBuckets:
        return cls()

    def get(self, bucket: StalenessBucket) -> tuple[FollowUpContact, ...]:
        return getattr(self, bucket.value)

    def bucket_of(self, contact_id: str) -> StalenessBucket | None:
        for bucket in StalenessBucket:
            if any(item.id == contact_id for item in self.get(bucket)):
                return bucket
        return None

    def without(self, contact_id: str, bucket: StalenessBucket) -> FollowUpBuckets:
        remaining = tuple(item for item in self.get(bucket) if item.id != contact_id)
        return _replace_bucket(self, bucket, remaining)

    def counts(self) -> dict[str, int]:
        return {bucket.value: len(self.get(bucket)) for bucket in StalenessBucket}

    def contact_ids(self) -> set[str]:
        return {item.id for bucket in StalenessBucket for item in self.get(bucket)}

    def is_empty(self) -> bool:
        return not any(self.get(bucket) for bucket in StalenessBucket)

    def to_payload(self) -> dict[str, list[dict[str, Any]]]:
        return {
            bucket.value: [item.to_payload() for item in self.get(bucket)]
            for bucket in StalenessBucket
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> FollowUpBuckets:
        """Rebuild from a persisted blob. Raises on anything malformed."""
        return cls(
            **{
                bucket.value: tuple(
                    FollowUpContact.from_payload(item) for item in payload[bucket.value]
                )
                for bucket in StalenessBucket
            }
        )


def _replace_bucket(
    buckets: FollowUpBuckets, bucket: StalenessBucket, items: tuple[FollowUpContact, ...]
) -> FollowUpBuckets:
    values = {name.value: buckets.get(name) for name in StalenessBucket}
    values[bucket.value] = items
    return FollowUpBuckets(**values)


@dataclass(frozen=True, slots=True)
class CalculationPolicy:
    terminal_status: str = "Paid"
    missing_created_at_is_old: bool = True


@dataclass(slots=True)
class FollowUpResult:
    """What the service hands to the API layer for one read."""

    buckets: FollowUpBuckets
    available: bool
    from_cache: bool = False
    calculated_at: datetime | None = None
    notices: list[str] = field(default_factory=list)

    @classmethod
    def unavailable(cls, notices: list[str] | None = None) -> FollowUpResult:
        return cls(buckets=FollowUpBuckets.empty(), available=False, notices=notices or [])
