from importlib.resources import files

import psycopg
import structlog
from psycopg import sql as sql_lib

log = structlog.get_logger()

MAX_INDEXED_DIMENSIONS = 2000


def _get_sql(vector_extension_schema: str, dimensions: int) -> str:
    with files("pgcrm.data").joinpath("contact_embeddings.sql").open(mode="r") as f:
        sql = f.read()
    sql = sql.replace("@extschema:vector@", vector_extension_schema)
    sql = sql.replace("__dimensions__", str(dimensions))
    return sql


def _get_vector_extension_schema_sql() -> sql_lib.SQL:
    return sql_lib.SQL("""
        select n.nspname
        from pg_extension e
        join pg_namespace n on n.oid = e.extnamespace
        where e.extname = 'vector'
    """)


def _get_embeddings_table_exists_sql() -> sql_lib.SQL:
    return sql_lib.SQL("select pg_catalog.to_regclass('public.contact_embeddings')")


def _get_contacts_table_exists_sql() -> sql_lib.SQL:
    return sql_lib.SQL("select pg_catalog.to_regclass('public.contacts')")


def _validate_dimensions(dimensions: int) -> None:
    if dimensions < 1 or dimensions > MAX_INDEXED_DIMENSIONS:
        raise ValueError(
            f"dimensions must be between 1 and {MAX_INDEXED_DIMENSIONS}, got {dimensions}"  # noqa
        )


async def ainstall(
    db_url: str,
    dimensions: int = 1536,
    vector_extension_schema: str | None = None,
    strict: bool = False,
) -> None:
    """Asynchronously install the contact embeddings schema into a database.

    Args:
        db_url: Database connection URL
        dimensions: Length of the stored vectors (default: 1536)
        vector_extension_schema: Schema where the vector extension is installed if it
            doesn't exist. If None, then the vector extension will be installed in the
            default schema (default: None)
        strict: If False, ignore if the schema is already installed. If True,
            raise error (default: False)

    Raises:
        psycopg.errors.DuplicateTable: If the table already exists and strict=True
        RuntimeError: If the contacts table is missing
    """
    _validate_dimensions(dimensions)
    async with (
        await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn,
        conn.cursor() as cur,
        conn.transaction(),
    ):
        await cur.execute(_get_contacts_table_exists_sql())
        result = await cur.fetchone()
        if result is None or result[0] is None:
            raise RuntimeError("contacts table not found, it must exist before install")

        await cur.execute(_get_embeddings_table_exists_sql())
        result = await cur.fetchone()
        if result is not None and result[0] is not None:
            if strict:
                raise psycopg.errors.DuplicateTable(
                    "contact_embeddings has already been installed"
                )
            log.info("contact_embeddings already installed")

        if vector_extension_schema is None:
            await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        else:
            await conn.execute(
                sql_lib.SQL(
                    "CREATE EXTENSION IF NOT EXISTS vector WITH SCHEMA {}"
                ).format(sql_lib.Identifier(vector_extension_schema))
            )

        await cur.execute(_get_vector_extension_schema_sql())
        result = await cur.fetchone()
        if result is None or result[0] is None:
            raise Exception("vector extension not installed")

        await conn.execute(_get_sql(result[0], dimensions))  # type: ignore


def install(
    db_url: str,
    dimensions: int = 1536,
    vector_extension_schema: str | None = None,
    strict: bool = False,
) -> None:
    """Install the contact embeddings schema into a database.

    Args:
        db_url: Database connection URL
        dimensions: Length of the stored vectors (default: 1536)
        vector_extension_schema: Schema where the vector extension is installed if it
            doesn't exist. If None, then the vector extension will be installed in the
            default schema (default: None)
        strict: If False, ignore if the schema is already installed. If True,
            raise error (default: False)
    """
    _validate_dimensions(dimensions)
    with (
        psycopg.connect(db_url, autocommit=True) as conn,
        conn.cursor() as cur,
        conn.transaction(),
    ):
        cur.execute(_get_contacts_table_exists_sql())
        result = cur.fetchone()
        if result is None or result[0] is None:
            raise RuntimeError("contacts table not found, it must exist before install")

        cur.execute(_get_embeddings_table_exists_sql())
        result = cur.fetchone()
        if result is not None and result[0] is not None:
            if strict:
                raise psycopg.errors.DuplicateTable(
                    "contact_embeddings has already been installed"
                )
            log.info("contact_embeddings already installed")

        if vector_extension_schema is None:
            conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        else:
            conn.execute(
                sql_lib.SQL(
                    "CREATE EXTENSION IF NOT EXISTS vector WITH SCHEMA {}"
                ).format(sql_lib.Identifier(vector_extension_schema))
            )

        cur.execute(_get_vector_extension_schema_sql())
        result = cur.fetchone()
        if result is None or result[0] is None:
            raise Exception("vector extension not installed")

        conn.execute(_get_sql(result[0], dimensions))  # type: ignore
