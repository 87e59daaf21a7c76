from typing import Protocol

import psycopg
import structlog
from psycopg.rows import dict_row

from .errors import StoreError
from .models import Contact

logger = structlog.get_logger()


class ContactSource(Protocol):
    """Read access to the relational store that owns contacts, notes and tags."""

    async def get_contact(self, contact_id: str, user_id: str) -> Contact | None:
        """Returns the contact if it exists, is not soft-deleted and is owned
        by `user_id`."""
        ...

    async def recent_notes(self, contact_id: str, limit: int) -> list[str]:
        """Returns the content of the `limit` newest notes, newest first."""
        ...

    async def tag_names(self, contact_id: str) -> list[str]: ...

    async def list_contact_ids(
        self, user_id: str, limit: int, after: str | None = None
    ) -> list[str]:
        """Returns up to `limit` non-deleted contact ids owned by `user_id`,
        ordered by id, strictly greater than `after` when given."""
        ...


class PostgresContactSource:
    """
    ContactSource backed by the `contacts`, `contact_metadata`, `notes`,
    `tags` and `contact_tags` tables.

    Attributes:
        conn (psycopg.AsyncConnection): connection owned by the caller.
    """

    def __init__(self, conn: psycopg.AsyncConnection):
        self.conn = conn

    async def get_contact(self, contact_id: str, user_id: str) -> Contact | None:
        try:
            async with self.conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    select c.id::text as id
                    , c.user_id::text as user_id
                    , c.first_name
                    , c.last_name
                    , c.company
                    , c.job_title
                    , c.how_we_met
                    , cm.location
                    , coalesce(cm.interests, '{}'::text[]) as interests
                    from contacts c
                    left join contact_metadata cm on cm.contact_id = c.id
                    where c.id = %s::uuid
                    and c.user_id = %s::uuid
                    and c.deleted_at is null
                    """,
                    (contact_id, user_id),
                )
                row = await cur.fetchone()
        except psycopg.Error as e:
            raise StoreError(f"failed to read contact: {e}") from e
        if row is None:
            await logger.adebug(
                "contact not found", contact_id=contact_id, user_id=user_id
            )
            return None
        return Contact(**row)

    async def recent_notes(self, contact_id: str, limit: int) -> list[str]:
        try:
            async with self.conn.cursor() as cur:
                await cur.execute(
                    """
                    select content
                    from notes
                    where contact_id = %s::uuid
                    order by created_at desc, id desc
                    limit %s
                    """,
                    (contact_id, limit),
                )
                return [row[0] for row in await cur.fetchall()]
        except psycopg.Error as e:
            raise StoreError(f"failed to read notes: {e}") from e

    async def tag_names(self, contact_id: str) -> list[str]:
        try:
            async with self.conn.cursor() as cur:
                await cur.execute(
                    """
                    select t.name
                    from contact_tags ct
                    join tags t on t.id = ct.tag_id
                    where ct.contact_id = %s::uuid
                    """,
                    (contact_id,),
                )
                return [row[0] for row in await cur.fetchall()]
        except psycopg.Error as e:
            raise StoreError(f"failed to read tags: {e}") from e

    async def list_contact_ids(
        self, user_id: str, limit: int, after: str | None = None
    ) -> list[str]:
        try:
            async with self.conn.cursor() as cur:
                await cur.execute(
                    """
                    select id::text
                    from contacts
                    where user_id = %(user_id)s::uuid
                    and deleted_at is null
                    and (%(after)s::uuid is null or id > %(after)s::uuid)
                    order by id
                    limit %(limit)s
                    """,
                    {"user_id": user_id, "after": after, "limit": limit},
                )
                return [row[0] for row in await cur.fetchall()]
        except psycopg.Error as e:
            raise StoreError(f"failed to list contacts: {e}") from e
