"""
Repository helpers for the activities table.

Activities are append-only; the follow-up feature only needs the latest
timestamp per contact and the ability to insert a new row.
"""

from collections.abc import Sequence
from datetime import datetime

from app.db.helpers import fetch_all, fetch_one, with_db_retry
from app.features.follow_up.domain.models import ActivityRecord, OptimisticActivity, ensure_utc


class ActivityRepository:
    @staticmethod
    @with_db_retry(max_retries=2)
    async def fetch_last_activity(contact_ids: Sequence[str]) -> dict[str, datetime]:
        """Latest activity timestamp for each contact that has one."""
        if not contact_ids:
            return {}

        query = """
            SELECT contact_id, MAX(timestamp) AS last_activity_at
            FROM activities
            WHERE contact_id = ANY(%s::uuid[])
            GROUP BY contact_id
        """

        rows = await fetch_all(query, (list(contact_ids),))
        return {
            str(row["contact_id"]): ensure_utc(row["last_activity_at"])
            for row in rows
            if row.get("last_activity_at") is not None
        }

    @staticmethod
    async def insert_activity(activity: OptimisticActivity) -> ActivityRecord:
        query = """
            INSERT INTO activities (contact_id, user_id, type, details, timestamp)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id, contact_id, type, details, timestamp
        """

        row = await fetch_one(
            query,
            (
                activity.contact_id,
                activity.user_id,
                activity.type,
                activity.details,
                activity.timestamp,
            ),
        )
        if not row:
            raise RuntimeError("Activity insert returned no row")
        return ActivityRecord.from_row(row)
