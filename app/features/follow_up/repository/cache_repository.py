"""
Raw SQL helpers for the follow_up_cache table.

One row per (user_id, cache_key). cache_data is an opaque JSON blob that
only FollowUpBuckets.to_payload / from_payload understand; rows are never
edited in place, only replaced or deleted.
"""

from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_one


class FollowUpCacheRepository:
    @staticmethod
    async def fetch_entry(user_id: str, cache_key: str) -> dict[str, Any] | None:
        query = """
            SELECT cache_data, metadata_version, expires_at, updated_at
            FROM follow_up_cache
            WHERE user_id = %s
              AND cache_key = %s
        """
        return await fetch_one(query, (user_id, cache_key))

    @staticmethod
    async def upsert_entry(
        user_id: str,
        cache_key: str,
        cache_data: dict[str, Any],
        metadata_version: int,
        expires_at: datetime,
    ) -> None:
        query = """
            INSERT INTO follow_up_cache (
                user_id, cache_key, cache_data, metadata_version, expires_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, NOW())
            ON CONFLICT (user_id, cache_key)
            DO UPDATE SET
                cache_data = EXCLUDED.cache_data,
                metadata_version = EXCLUDED.metadata_version,
                expires_at = EXCLUDED.expires_at,
                updated_at = NOW()
        """
        await execute_query(
            query, (user_id, cache_key, Jsonb(cache_data), metadata_version, expires_at)
        )

    @staticmethod
    async def delete_entry(user_id: str, cache_key: str) -> int:
        return await execute_query(
            "DELETE FROM follow_up_cache WHERE user_id = %s AND cache_key = %s",
            (user_id, cache_key),
        )

    @staticmethod
    async def delete_for_user(user_id: str) -> int:
        return await execute_query("DELETE FROM follow_up_cache WHERE user_id = %s", (user_id,))

    @staticmethod
    async def delete_stale(current_version: int) -> int:
        """Drop expired rows and rows written under an older metadata version."""
        query = """
            DELETE FROM follow_up_cache
            WHERE expires_at < NOW()
               OR metadata_version <> %s
        """
        return await execute_query(query, (current_version,))
