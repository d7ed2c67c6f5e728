"""
Read-only access to CRM contacts.

Contacts are owned by the contact-management side of the CRM; the
follow-up feature only reads them. The WHERE clause mirrors the contacts
row-level-security policy: a user sees contacts they own, contacts they
created, and every contact of a team they own.
"""

from app.db.helpers import fetch_all
from app.features.follow_up.domain.models import Contact
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ContactRepository:
    @staticmethod
    async def fetch_contacts(user_id: str) -> list[Contact]:
        query = """
            SELECT
                c.id,
                c.name,
                c.phone_number,
                c.status,
                COALESCE(c.labels, '{}'::text[]) AS labels,
                c.created_at
            FROM contacts c
            WHERE c.owner_id = %s
               OR c.user_id = %s
               OR (
                   c.team_id IS NOT NULL
                   AND EXISTS (
                       SELECT 1 FROM teams t
                       WHERE t.id = c.team_id AND t.owner_id = %s
                   )
               )
            ORDER BY c.created_at DESC NULLS LAST, c.id
        """

        rows = await fetch_all(query, (user_id, user_id, user_id))

        contacts: list[Contact] = []
        for row in rows:
            try:
                contacts.append(Contact.from_row(row))
            except ValueError as e:
                logger.warning("Skipping malformed contact row", user_id=user_id, error=str(e))
        return contacts
