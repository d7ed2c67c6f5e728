"""
In-memory cache of follow-up calculations.

Keys are canonical: ``follow_up:<user_id>:<sorted ids>|<sorted labels>``,
so the same contact set and label selection always hit the same entry
regardless of input order. Entries are immutable; every write replaces the
whole entry under a per-key lock so a reader never sees half a patch.

Invalidation is by epoch: ``invalidate_user`` bumps the user's epoch and
any entry written under an older epoch reads as a miss. Expired and
invalidated entries are dropped together with their locks.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from app.features.follow_up.domain.models import FollowUpBuckets, StalenessBucket
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "follow_up"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def build_cache_key(user_id: str, contact_ids: Iterable[str], label_filter: Iterable[str]) -> str:
    ids = ",".join(sorted(set(contact_ids)))
    labels = ",".join(sorted(set(label_filter)))
    return f"{KEY_PREFIX}:{user_id}:{ids}|{labels}"


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: str
    user_id: str
    buckets: FollowUpBuckets
    created_at: datetime
    epoch: int
    metadata_version: int = 1


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total, 4) if total else 0.0

    def to_dict(self) -> dict:
        return {"hits": self.hits, "misses": self.misses, "hit_rate": self.hit_rate}


@dataclass(slots=True)
class _UserState:
    epoch: int = 0
    keys: set[str] = field(default_factory=set)


class CalculationCache:
    def __init__(
        self,
        ttl_seconds: int = 300,
        metadata_version: int = 1,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._metadata_version = metadata_version
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._users: dict[str, _UserState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._stats = CacheStats()

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _user(self, user_id: str) -> _UserState:
        state = self._users.get(user_id)
        if state is None:
            state = self._users[user_id] = _UserState()
        return state

    def _is_valid(self, entry: CacheEntry) -> bool:
        if entry.epoch != self._user(entry.user_id).epoch:
            return False
        return self._clock() - entry.created_at < self._ttl

    def _evict(self, key: str) -> None:
        """Forget an entry along with its lock. A held lock stays until its holder is done."""
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._user(entry.user_id).keys.discard(key)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def _evict_stale(self, user_id: str) -> None:
        state = self._user(user_id)
        for key in list(state.keys):
            entry = self._entries.get(key)
            if entry is None or not self._is_valid(entry):
                self._evict(key)
                state.keys.discard(key)

    def get(
        self,
        user_id: str,
        contact_ids: Iterable[str],
        label_filter: Iterable[str] = (),
        *,
        force: bool = False,
    ) -> CacheEntry | None:
        if force:
            return None
        return self.get_by_key(user_id, build_cache_key(user_id, contact_ids, label_filter))

    def get_by_key(self, user_id: str, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None or entry.user_id != user_id or not self._is_valid(entry):
            self._stats.misses += 1
            if entry is not None and entry.user_id == user_id:
                self._evict(key)
            return None
        self._stats.hits += 1
        return entry

    async def set(
        self,
        user_id: str,
        contact_ids: Iterable[str],
        label_filter: Iterable[str],
        buckets: FollowUpBuckets,
        *,
        created_at: datetime | None = None,
    ) -> CacheEntry:
        key = build_cache_key(user_id, contact_ids, label_filter)
        self._evict_stale(user_id)
        async with self._lock(key):
            state = self._user(user_id)
            entry = CacheEntry(
                key=key,
                user_id=user_id,
                buckets=buckets,
                created_at=created_at or self._clock(),
                epoch=state.epoch,
                metadata_version=self._metadata_version,
            )
            self._entries[key] = entry
            state.keys.add(key)
        return entry

    async def invalidate(
        self, user_id: str, contact_ids: Iterable[str], label_filter: Iterable[str] = ()
    ) -> bool:
        key = build_cache_key(user_id, contact_ids, label_filter)
        async with self._lock(key):
            removed = self._entries.pop(key, None) is not None
            self._user(user_id).keys.discard(key)
        return removed

    def invalidate_user(self, user_id: str) -> None:
        """Every entry of the user written before now becomes a miss and is dropped."""
        state = self._user(user_id)
        state.epoch += 1
        for key in list(state.keys):
            self._evict(key)
        state.keys.clear()
        logger.debug("Follow-up cache invalidated", user_id=user_id)

    async def clear_user(self, user_id: str) -> int:
        state = self._user(user_id)
        keys = list(state.keys)
        for key in keys:
            async with self._lock(key):
                self._entries.pop(key, None)
            self._locks.pop(key, None)
        state.keys.clear()
        state.epoch += 1
        return len(keys)

    async def apply_optimistic_patch(
        self,
        user_id: str,
        contact_ids: Iterable[str],
        label_filter: Iterable[str],
        contact_id: str,
        from_bucket: StalenessBucket | None = None,
    ) -> CacheEntry | None:
        """Drop ``contact_id`` from its bucket in the cached entry.

        A just-contacted contact is not stale by definition. Returns the
        patched entry, or None when there is no valid entry or the contact
        is not in the bucket.
        """
        key = build_cache_key(user_id, contact_ids, label_filter)
        return await self._patch_key(user_id, key, contact_id, from_bucket)

    async def patch_contact(self, user_id: str, contact_id: str) -> list[CacheEntry]:
        """Apply the optimistic patch to every entry of the user holding the contact."""
        patched = []
        for key in list(self._user(user_id).keys):
            entry = await self._patch_key(user_id, key, contact_id, None)
            if entry is not None:
                patched.append(entry)
        return patched

    async def _patch_key(
        self, user_id: str, key: str, contact_id: str, from_bucket: StalenessBucket | None
    ) -> CacheEntry | None:
        if key not in self._entries:
            return None
        async with self._lock(key):
            entry = self._entries.get(key)
            if entry is None or entry.user_id != user_id or not self._is_valid(entry):
                return None

            bucket = from_bucket or entry.buckets.bucket_of(contact_id)
            if bucket is None:
                return None

            remaining = entry.buckets.without(contact_id, bucket)
            if remaining == entry.buckets:
                return None

            patched = replace(entry, buckets=remaining)
            self._entries[key] = patched

        logger.debug(
            "Optimistic patch applied",
            user_id=user_id,
            contact_id=contact_id,
            bucket=bucket.value,
        )
        return patched

    def stats(self) -> dict:
        return {**self._stats.to_dict(), "entries": len(self._entries)}
