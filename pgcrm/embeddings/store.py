from functools import cached_property
from typing import Protocol

import numpy as np
import psycopg
import structlog
from psycopg import sql
from psycopg.rows import dict_row
from pydantic import BaseModel, ConfigDict

from .embeddings import EmbeddingVector
from .errors import StoreError
from .models import SimilarityMatch

logger = structlog.get_logger()


class EmbeddingStore(Protocol):
    """Persists one current embedding per contact and serves similarity queries."""

    async def get_fingerprint(self, contact_id: str) -> str | None:
        """Returns the content hash of the stored embedding, if any."""
        ...

    async def upsert(
        self,
        contact_id: str,
        user_id: str,
        embedding: EmbeddingVector,
        content_hash: str,
        source_text: str,
        model_version: str,
    ) -> bool:
        """Inserts or replaces the embedding of `contact_id`. Returns True when
        a new record was created, False when an existing one was replaced."""
        ...

    async def find_similar(
        self,
        user_id: str,
        query_embedding: EmbeddingVector,
        limit: int,
        similarity_threshold: float,
    ) -> list[SimilarityMatch]:
        """Returns up to `limit` matches owned by `user_id` whose similarity is
        at least `similarity_threshold`, most similar first."""
        ...


class EmbeddingTables(BaseModel):
    """Names of the tables the store reads and writes."""

    model_config = ConfigDict(frozen=True)
    schema_name: str = "public"
    embeddings_table: str = "contact_embeddings"
    contacts_table: str = "contacts"


class EmbeddingQueryBuilder:
    """
    Builds the SQL statements used by PostgresEmbeddingStore.

    Attributes:
        tables (EmbeddingTables): the tables the queries target.
    """

    def __init__(self, tables: EmbeddingTables):
        self.tables = tables

    @property
    def embeddings_table_ident(self) -> sql.Identifier:
        return sql.Identifier(self.tables.schema_name, self.tables.embeddings_table)

    @property
    def contacts_table_ident(self) -> sql.Identifier:
        return sql.Identifier(self.tables.schema_name, self.tables.contacts_table)

    @cached_property
    def fetch_fingerprint_query(self) -> sql.Composed:
        return sql.SQL("""
            select content_hash
            from {embeddings}
            where contact_id = %s::uuid
        """).format(embeddings=self.embeddings_table_ident)

    @cached_property
    def upsert_query(self) -> sql.Composed:
        """
        Inserts or replaces the embedding of a contact in one statement.

        The row is only written when the contact is owned by the given user,
        so the stored user_id always matches the contact's. `xmax = 0` holds
        for freshly inserted rows and tells creates from updates.
        """
        return sql.SQL("""
            insert into {embeddings}
            ( contact_id
            , user_id
            , embedding
            , content_hash
            , source_text
            , model_version
            )
            select c.id, c.user_id, %(embedding)s, %(content_hash)s
            , %(source_text)s, %(model_version)s
            from {contacts} c
            where c.id = %(contact_id)s::uuid
            and c.user_id = %(user_id)s::uuid
            on conflict (contact_id) do update
            set user_id = excluded.user_id
            , embedding = excluded.embedding
            , content_hash = excluded.content_hash
            , source_text = excluded.source_text
            , model_version = excluded.model_version
            , updated_at = now()
            returning (xmax = 0) as created
        """).format(
            embeddings=self.embeddings_table_ident,
            contacts=self.contacts_table_ident,
        )

    @cached_property
    def find_similar_query(self) -> sql.Composed:
        """
        Cosine similarity search over the embeddings of one user.

        Soft-deleted contacts are excluded. Ties on distance are broken by
        contact id so equal scores come back in a stable order.
        """
        return sql.SQL("""
            select c.id::text as contact_id
            , 1 - (e.embedding <=> %(query)s) as similarity
            , c.first_name
            , c.last_name
            , c.company
            , c.job_title
            from {embeddings} e
            inner join {contacts} c on e.contact_id = c.id
            where e.user_id = %(user_id)s::uuid
            and c.deleted_at is null
            and 1 - (e.embedding <=> %(query)s) >= %(threshold)s
            order by e.embedding <=> %(query)s, c.id
            limit %(limit)s
        """).format(
            embeddings=self.embeddings_table_ident,
            contacts=self.contacts_table_ident,
        )


class PostgresEmbeddingStore:
    """
    EmbeddingStore backed by the `contact_embeddings` table and pgvector.

    The connection must have the pgvector types registered (see `db.connect`).
    Every statement runs on its own, so each upsert is atomic independently of
    the rest of a batch.
    """

    def __init__(
        self,
        conn: psycopg.AsyncConnection,
        tables: EmbeddingTables | None = None,
    ):
        self.conn = conn
        self.queries = EmbeddingQueryBuilder(tables or EmbeddingTables())

    async def get_fingerprint(self, contact_id: str) -> str | None:
        try:
            async with self.conn.cursor() as cur:
                await cur.execute(self.queries.fetch_fingerprint_query, (contact_id,))
                row = await cur.fetchone()
        except psycopg.Error as e:
            raise StoreError(f"failed to read embedding: {e}") from e
        return row[0] if row is not None else None

    async def upsert(
        self,
        contact_id: str,
        user_id: str,
        embedding: EmbeddingVector,
        content_hash: str,
        source_text: str,
        model_version: str,
    ) -> bool:
        params = {
            "contact_id": contact_id,
            "user_id": user_id,
            "embedding": np.array(embedding, dtype=np.float32),
            "content_hash": content_hash,
            "source_text": source_text,
            "model_version": model_version,
        }
        try:
            async with self.conn.cursor() as cur:
                await cur.execute(self.queries.upsert_query, params)
                row = await cur.fetchone()
        except psycopg.Error as e:
            raise StoreError(f"failed to write embedding: {e}") from e
        if row is None:
            raise StoreError(
                f"scope mismatch: contact {contact_id} is not owned by user {user_id}"
            )
        created = bool(row[0])
        await logger.adebug(
            "embedding written", contact_id=contact_id, created=created
        )
        return created

    async def find_similar(
        self,
        user_id: str,
        query_embedding: EmbeddingVector,
        limit: int,
        similarity_threshold: float,
    ) -> list[SimilarityMatch]:
        params = {
            "user_id": user_id,
            "query": np.array(query_embedding, dtype=np.float32),
            "threshold": similarity_threshold,
            "limit": limit,
        }
        try:
            async with self.conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(self.queries.find_similar_query, params)
                rows = await cur.fetchall()
        except psycopg.Error as e:
            raise StoreError(f"Search error: {e}") from e
        matches = [SimilarityMatch(**row) for row in rows]
        await logger.adebug(f"found {len(matches)} similar contacts", user_id=user_id)
        return matches
