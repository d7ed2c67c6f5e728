"""
Optimistic activity overlay.

A logged activity shows up immediately: ``record`` inserts a pending entry
and returns it before the database has been touched. A background task
persists the activity and moves the entry to ``succeeded`` or ``failed``.
Confirmed entries linger for a short grace period so the UI does not
flicker while confirmed data catches up; every entry is gone after the
expiry delay whatever happened to it.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from app.features.follow_up.domain.models import (
    ActivityDescriptor,
    ActivityRecord,
    OptimisticActivity,
    SyncStatus,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

PersistActivity = Callable[[OptimisticActivity], Awaitable[ActivityRecord]]
ConfirmedCallback = Callable[[OptimisticActivity, ActivityRecord], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class OptimisticOverlay:
    def __init__(
        self,
        persist: PersistActivity,
        on_confirmed: ConfirmedCallback | None = None,
        grace_seconds: float = 1.0,
        expiry_seconds: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._persist = persist
        self.on_confirmed = on_confirmed
        self._grace_seconds = grace_seconds
        self._expiry_seconds = expiry_seconds
        self._clock = clock
        # contact_id -> activity_id -> entry
        self._entries: dict[str, dict[str, OptimisticActivity]] = {}
        self._tasks: set[asyncio.Task] = set()

    def record(
        self, user_id: str, contact_id: str, descriptor: ActivityDescriptor
    ) -> OptimisticActivity:
        """Insert a pending entry now and persist it in the background.

        Must be called from inside a running event loop.
        """
        now = self._clock()
        activity = OptimisticActivity(
            id=f"optimistic-{uuid.uuid4()}",
            user_id=user_id,
            contact_id=contact_id,
            type=descriptor.type,
            details=descriptor.details,
            timestamp=descriptor.timestamp or now,
            local_timestamp=now,
        )
        self._entries.setdefault(contact_id, {})[activity.id] = activity

        self._spawn(self._sync(activity))
        self._spawn(self._expire(activity))

        logger.info(
            "Optimistic activity recorded",
            user_id=user_id,
            contact_id=contact_id,
            activity_type=descriptor.type,
        )
        return activity

    def snapshot(
        self, user_id: str, contact_ids: Iterable[str] | None = None
    ) -> dict[str, tuple[OptimisticActivity, ...]]:
        wanted = set(contact_ids) if contact_ids is not None else None
        result: dict[str, tuple[OptimisticActivity, ...]] = {}
        for contact_id, by_id in self._entries.items():
            if wanted is not None and contact_id not in wanted:
                continue
            entries = tuple(entry for entry in by_id.values() if entry.user_id == user_id)
            if entries:
                result[contact_id] = entries
        return result

    def entries(self, user_id: str) -> list[OptimisticActivity]:
        items = [
            entry
            for by_id in self._entries.values()
            for entry in by_id.values()
            if entry.user_id == user_id
        ]
        return sorted(items, key=lambda entry: entry.local_timestamp)

    def counts(self, user_id: str) -> dict[str, int]:
        tally = Counter(entry.sync_status.value for entry in self.entries(user_id))
        return {status.value: tally.get(status.value, 0) for status in SyncStatus}

    def get(self, contact_id: str, activity_id: str) -> OptimisticActivity | None:
        return self._entries.get(contact_id, {}).get(activity_id)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._entries.clear()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _sync(self, activity: OptimisticActivity) -> None:
        try:
            record = await self._persist(activity)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._update(activity, sync_status=SyncStatus.FAILED, error=str(e))
            logger.warning(
                "Optimistic activity failed to persist",
                user_id=activity.user_id,
                contact_id=activity.contact_id,
                error=str(e),
            )
            return

        confirmed = self._update(activity, sync_status=SyncStatus.SUCCEEDED)
        logger.info(
            "Optimistic activity confirmed",
            user_id=activity.user_id,
            contact_id=activity.contact_id,
            activity_id=record.id,
        )

        if self.on_confirmed is not None:
            try:
                await self.on_confirmed(confirmed or activity, record)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Confirmed activity refresh failed",
                    user_id=activity.user_id,
                    contact_id=activity.contact_id,
                    error=str(e),
                )

        await asyncio.sleep(self._grace_seconds)
        self._remove(activity)

    async def _expire(self, activity: OptimisticActivity) -> None:
        await asyncio.sleep(self._expiry_seconds)
        removed = self._remove(activity)
        if removed is not None and removed.sync_status is SyncStatus.PENDING:
            logger.warning(
                "Optimistic activity expired while still pending",
                user_id=activity.user_id,
                contact_id=activity.contact_id,
            )

    def _update(self, activity: OptimisticActivity, **changes: Any) -> OptimisticActivity | None:
        by_id = self._entries.get(activity.contact_id)
        if not by_id or activity.id not in by_id:
            return None
        updated = replace(by_id[activity.id], **changes)
        by_id[activity.id] = updated
        return updated

    def _remove(self, activity: OptimisticActivity) -> OptimisticActivity | None:
        by_id = self._entries.get(activity.contact_id)
        if not by_id:
            return None
        removed = by_id.pop(activity.id, None)
        if not by_id:
            self._entries.pop(activity.contact_id, None)
        return removed
