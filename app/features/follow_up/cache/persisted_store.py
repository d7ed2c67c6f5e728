"""
Postgres-backed layer under the in-memory calculation cache.

Survives restarts and is shared between API workers. Any version mismatch
or undecodable blob is treated as a miss and the row is dropped; database
errors never reach the caller.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from app.db.helpers import DatabaseError
from app.features.follow_up.domain.models import FollowUpBuckets, ensure_utc
from app.features.follow_up.repository.cache_repository import FollowUpCacheRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PersistedCalculationStore:
    def __init__(
        self,
        repository: type[FollowUpCacheRepository] = FollowUpCacheRepository,
        metadata_version: int = 1,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repository = repository
        self.metadata_version = metadata_version
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    async def load(self, user_id: str, cache_key: str) -> tuple[FollowUpBuckets, datetime] | None:
        """Return (buckets, written_at) for a current, unexpired row."""
        try:
            row = await self._repository.fetch_entry(user_id, cache_key)
        except DatabaseError as e:
            logger.warning("Persisted follow-up cache read failed", user_id=user_id, error=str(e))
            return None

        if not row:
            return None

        expires_at = ensure_utc(row.get("expires_at"))
        if expires_at is not None and expires_at <= self._clock():
            return None

        if row.get("metadata_version") != self.metadata_version:
            logger.info(
                "Dropping persisted follow-up cache with old version",
                user_id=user_id,
                found=row.get("metadata_version"),
                expected=self.metadata_version,
            )
            await self._discard(user_id, cache_key)
            return None

        try:
            buckets = FollowUpBuckets.from_payload(row["cache_data"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Dropping undecodable persisted follow-up cache", user_id=user_id, error=str(e)
            )
            await self._discard(user_id, cache_key)
            return None

        written_at = ensure_utc(row.get("updated_at")) or self._clock()
        return buckets, written_at

    async def save(self, user_id: str, cache_key: str, buckets: FollowUpBuckets) -> bool:
        try:
            await self._repository.upsert_entry(
                user_id=user_id,
                cache_key=cache_key,
                cache_data=buckets.to_payload(),
                metadata_version=self.metadata_version,
                expires_at=self._clock() + self._ttl,
            )
            return True
        except DatabaseError as e:
            logger.warning("Persisted follow-up cache write failed", user_id=user_id, error=str(e))
            return False

    async def delete_for_user(self, user_id: str) -> int:
        try:
            return await self._repository.delete_for_user(user_id)
        except DatabaseError as e:
            logger.warning("Persisted follow-up cache delete failed", user_id=user_id, error=str(e))
            return 0

    async def delete_expired(self) -> int:
        try:
            return await self._repository.delete_stale(self.metadata_version)
        except DatabaseError as e:
            logger.warning("Persisted follow-up cache cleanup failed", error=str(e))
            return 0

    async def _discard(self, user_id: str, cache_key: str) -> None:
        try:
            await self._repository.delete_entry(user_id, cache_key)
        except DatabaseError as e:
            logger.warning("Could not drop persisted follow-up cache row", error=str(e))
