"""
Idle gate for follow-up recalculation.

The last calculation instant per user lives in Redis so every API worker
sees the same value. Reads that fail degrade to "never calculated", which
lets the calculation run instead of blocking the user.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from app.features.follow_up.domain.models import ensure_utc
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

KEY_PREFIX = "follow_up:last_calculation"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IdleCalculationTimer:
    def __init__(
        self,
        store: KeyValueStore | None = None,
        idle_threshold_seconds: int = 3600,
        fresh_window_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store or fast_redis
        self.idle_threshold_seconds = idle_threshold_seconds
        self.fresh_window_seconds = fresh_window_seconds
        self._clock = clock

    @staticmethod
    def _key(user_id: str) -> str:
        return f"{KEY_PREFIX}:{user_id}"

    async def last_calculation(self, user_id: str) -> datetime | None:
        raw = await self._store.get(self._key(user_id))
        if not raw:
            return None
        try:
            return ensure_utc(raw)
        except ValueError:
            logger.warning("Ignoring malformed last calculation timestamp", user_id=user_id)
            return None

    async def _seconds_since(self, user_id: str) -> float | None:
        last = await self.last_calculation(user_id)
        if last is None:
            return None
        return (self._clock() - last).total_seconds()

    async def should_calculate(self, user_id: str) -> bool:
        elapsed = await self._seconds_since(user_id)
        return elapsed is None or elapsed >= self.idle_threshold_seconds

    async def mark_done(self, user_id: str) -> None:
        # Keep the marker a little past the threshold; once gone it reads as "never"
        await self._store.set_with_ttl(
            self._key(user_id),
            self._clock().isoformat(),
            ttl_s=self.idle_threshold_seconds * 2,
        )

    async def force(self, user_id: str) -> None:
        await self._store.delete(self._key(user_id))

    async def status(self, user_id: str) -> str:
        elapsed = await self._seconds_since(user_id)
        if elapsed is None:
            return "never"
        if elapsed < self.fresh_window_seconds:
            return "fresh"
        if elapsed < self.idle_threshold_seconds:
            return "idle"
        return "stale"

    async def time_until_next(self, user_id: str) -> float:
        elapsed = await self._seconds_since(user_id)
        if elapsed is None:
            return 0.0
        return max(0.0, self.idle_threshold_seconds - elapsed)
