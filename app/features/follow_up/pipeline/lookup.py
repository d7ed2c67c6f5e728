"""
Batched activity lookup.

Turns a contact id set into per-contact ``ActivitySummary`` values by
querying the latest activity timestamp in batches. A batch that fails is
logged and skipped; its contacts read as "no activity" for this pass.

Each full fetch takes a per-user generation number. When a newer fetch for
the same user has started by the time an older one finishes, the older
result is marked superseded and never reaches the snapshot.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from app.features.follow_up.domain.models import ActivitySummary
from app.features.follow_up.repository.activity_repository import ActivityRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

FetchBatch = Callable[[Sequence[str]], Awaitable[dict[str, datetime]]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class LookupResult:
    activity: dict[str, ActivitySummary] = field(default_factory=dict)
    covered: set[str] = field(default_factory=set)
    total_batches: int = 0
    failed_batches: int = 0
    superseded: bool = False

    @property
    def total_failure(self) -> bool:
        return self.total_batches > 0 and self.failed_batches == self.total_batches


@dataclass(frozen=True, slots=True)
class _Snapshot:
    activity: dict[str, ActivitySummary]
    fetched_at: datetime


class ActivityLookupService:
    def __init__(
        self,
        fetch_batch: FetchBatch = ActivityRepository.fetch_last_activity,
        batch_size: int = 50,
        snapshot_ttl_seconds: int = 120,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._fetch_batch = fetch_batch
        self.batch_size = batch_size
        self._snapshot_ttl = timedelta(seconds=snapshot_ttl_seconds)
        self._clock = clock
        self._generations: dict[str, int] = {}
        self._snapshots: dict[str, _Snapshot] = {}

    async def fetch(self, user_id: str, contact_ids: Sequence[str]) -> LookupResult:
        generation = self._generations.get(user_id, 0) + 1
        self._generations[user_id] = generation

        result = await self._fetch_batches(user_id, contact_ids)

        if self._generations.get(user_id) != generation:
            logger.info(
                "Discarding superseded activity lookup",
                user_id=user_id,
                generation=generation,
            )
            result.superseded = True
            return result

        if result.total_failure:
            logger.error(
                "Activity lookup failed for every batch",
                user_id=user_id,
                batches=result.total_batches,
            )
        else:
            # Contacts of failed batches stay out so the next read retries them
            self._snapshots[user_id] = _Snapshot(
                activity={cid: result.activity[cid] for cid in result.covered},
                fetched_at=self._clock(),
            )
        return result

    async def refresh_contacts(self, user_id: str, contact_ids: Sequence[str]) -> LookupResult:
        """Re-read a few contacts and merge them into the current snapshot."""
        generation = self._generations.get(user_id, 0)
        result = await self._fetch_batches(user_id, contact_ids)

        if self._generations.get(user_id) != generation:
            result.superseded = True
            return result

        snapshot = self._snapshots.get(user_id)
        if snapshot is not None and result.covered:
            merged = dict(snapshot.activity)
            merged.update({cid: result.activity[cid] for cid in result.covered})
            self._snapshots[user_id] = _Snapshot(activity=merged, fetched_at=snapshot.fetched_at)
        return result

    def snapshot_for(
        self, user_id: str, contact_ids: Sequence[str]
    ) -> dict[str, ActivitySummary] | None:
        snapshot = self._snapshots.get(user_id)
        if snapshot is None or self._clock() - snapshot.fetched_at >= self._snapshot_ttl:
            return None
        if any(cid not in snapshot.activity for cid in contact_ids):
            return None
        return {cid: snapshot.activity[cid] for cid in contact_ids}

    def invalidate_snapshot(self, user_id: str) -> None:
        self._snapshots.pop(user_id, None)

    async def _fetch_batches(self, user_id: str, contact_ids: Sequence[str]) -> LookupResult:
        ids = list(dict.fromkeys(contact_ids))
        result = LookupResult(activity={cid: ActivitySummary.none() for cid in ids})
        batches = [ids[i : i + self.batch_size] for i in range(0, len(ids), self.batch_size)]
        result.total_batches = len(batches)

        start = time.perf_counter()
        for batch_index, batch in enumerate(batches):
            try:
                latest = await self._fetch_batch(batch)
            except Exception as e:
                result.failed_batches += 1
                logger.warning(
                    "Activity lookup batch failed",
                    user_id=user_id,
                    batch_index=batch_index,
                    batch_size=len(batch),
                    error=str(e),
                )
                continue

            result.covered.update(batch)
            for contact_id, last_at in latest.items():
                if contact_id in result.activity and last_at is not None:
                    result.activity[contact_id] = ActivitySummary(
                        has_activity=True, last_activity_at=last_at
                    )

        logger.debug(
            "Activity lookup finished",
            user_id=user_id,
            contact_count=len(ids),
            batches=result.total_batches,
            failed_batches=result.failed_batches,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return result
