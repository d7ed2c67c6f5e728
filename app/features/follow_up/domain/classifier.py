"""
Follow-up staleness classifier.

Pure functions only: no I/O, no clock reads, no caching. ``now`` is always
passed in so the same inputs always give the same bucket.

Bucket rule for a contact that is not excluded:
- no confirmed and no optimistic activity  -> needs_approach
- last activity >= 30 days ago             -> stale_30_days
- last activity >= 7 days ago              -> stale_7_days
- last activity >= 3 days ago              -> stale_3_days
- otherwise                                -> no bucket

Each stale threshold also requires the contact itself to be at least that
many days old, so a contact imported yesterday with an old activity does
not show up as stale.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from .models import (
    ActivitySummary,
    CalculationPolicy,
    Contact,
    FollowUpBuckets,
    FollowUpContact,
    OptimisticActivity,
    StalenessBucket,
)

ONE_DAY = timedelta(days=1)

STALE_THRESHOLDS: tuple[tuple[int, StalenessBucket], ...] = (
    (30, StalenessBucket.STALE_30_DAYS),
    (7, StalenessBucket.STALE_7_DAYS),
    (3, StalenessBucket.STALE_3_DAYS),
)

ProgressCallback = Callable[[int, int], None]


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Floor of the elapsed days. Negative when ``earlier`` is in the future."""
    return (later - earlier) // ONE_DAY


def passes_label_filter(contact: Contact, label_filter: Iterable[str]) -> bool:
    selected = set(label_filter)
    if not selected:
        return True
    return bool(selected.intersection(contact.labels))


def is_candidate(
    contact: Contact, label_filter: Iterable[str] = (), terminal_status: str = "Paid"
) -> bool:
    return contact.status != terminal_status and passes_label_filter(contact, label_filter)


def select_active_contacts(
    contacts: Iterable[Contact], label_filter: Sequence[str] = (), terminal_status: str = "Paid"
) -> list[Contact]:
    return [c for c in contacts if is_candidate(c, label_filter, terminal_status)]


def effective_last_activity(
    activity: ActivitySummary | None, optimistic: Sequence[OptimisticActivity]
) -> tuple[bool, datetime | None]:
    """Merge confirmed and optimistic activity into (has_activity, last_at)."""
    confirmed_at = activity.last_activity_at if activity and activity.has_activity else None
    has_activity = bool(activity and activity.has_activity) or bool(optimistic)

    latest = confirmed_at
    if optimistic:
        latest_optimistic = max(entry.local_timestamp for entry in optimistic)
        if latest is None or latest_optimistic > latest:
            latest = latest_optimistic

    return has_activity, latest


def classify(
    contact: Contact,
    activity: ActivitySummary | None,
    optimistic: Sequence[OptimisticActivity],
    now: datetime,
    *,
    label_filter: Sequence[str] = (),
    terminal_status: str = "Paid",
    missing_created_at_is_old: bool = True,
) -> StalenessBucket | None:
    if not is_candidate(contact, label_filter, terminal_status):
        return None

    has_activity, last_activity_at = effective_last_activity(activity, optimistic)
    # A confirmed flag without a timestamp counts as never approached
    if not has_activity or last_activity_at is None:
        return StalenessBucket.NEEDS_APPROACH

    days_since_activity = whole_days_between(last_activity_at, now)
    if contact.created_at is None:
        days_since_created = 0
        created_gate_open = missing_created_at_is_old
    else:
        days_since_created = whole_days_between(contact.created_at, now)
        created_gate_open = False

    for threshold, bucket in STALE_THRESHOLDS:
        if days_since_activity >= threshold and (
            created_gate_open or days_since_created >= threshold
        ):
            return bucket

    return None


def calculate_follow_ups(
    contacts: Iterable[Contact],
    activity: Mapping[str, ActivitySummary],
    optimistic: Mapping[str, Sequence[OptimisticActivity]],
    now: datetime,
    *,
    label_filter: Sequence[str] = (),
    policy: CalculationPolicy | None = None,
    on_progress: ProgressCallback | None = None,
    progress_interval: int = 10,
) -> FollowUpBuckets:
    """Classify a whole contact set. Input order is kept inside each bucket."""
    policy = policy or CalculationPolicy()
    active = select_active_contacts(contacts, label_filter, policy.terminal_status)
    total = len(active)

    lists: dict[StalenessBucket, list[FollowUpContact]] = {bucket: [] for bucket in StalenessBucket}

    for processed, contact in enumerate(active, start=1):
        entries = optimistic.get(contact.id, ())
        bucket = classify(
            contact,
            activity.get(contact.id),
            entries,
            now,
            terminal_status=policy.terminal_status,
            missing_created_at_is_old=policy.missing_created_at_is_old,
        )
        if bucket is not None:
            _, last_at = effective_last_activity(activity.get(contact.id), entries)
            lists[bucket].append(FollowUpContact(contact=contact, last_activity_at=last_at))

        if on_progress and (processed % progress_interval == 0 or processed == total):
            on_progress(processed, total)

    return FollowUpBuckets(**{bucket.value: tuple(items) for bucket, items in lists.items()})


@dataclass(frozen=True, slots=True)
class Page:
    items: tuple[FollowUpContact, ...]
    page: int
    page_size: int
    total_count: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size) if self.page_size else 0


def paginate(items: Sequence[FollowUpContact], page: int, page_size: int) -> Page:
    """1-based page of a bucket. Pages past the end are empty."""
    if page < 1 or page_size < 1:
        raise ValueError("page and page_size must be positive")
    start = (page - 1) * page_size
    return Page(
        items=tuple(items[start : start + page_size]),
        page=page,
        page_size=page_size,
        total_count=len(items),
    )
