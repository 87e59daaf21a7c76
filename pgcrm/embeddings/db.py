from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import psycopg
from pgvector.psycopg import register_vector_async  # type: ignore

from .errors import StoreError


@asynccontextmanager
async def connect(
    db_url: str, application_name: str = "pgcrm"
) -> AsyncIterator[psycopg.AsyncConnection]:
    """Opens an autocommit connection with the pgvector types registered."""
    try:
        conn = await psycopg.AsyncConnection.connect(
            db_url, autocommit=True, application_name=application_name
        )
    except psycopg.OperationalError as e:
        raise StoreError(f"unable to connect to database: {e}") from e
    async with conn:
        await register_vector_async(conn)
        yield conn
