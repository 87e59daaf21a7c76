import os
from collections.abc import Generator

import psycopg
import pytest
import structlog
from testcontainers.postgres import PostgresContainer  # type:ignore

from pgcrm import install
from pgcrm.embeddings.composer import ContentComposer

from .utils import FakeContactSource, FakeEmbeddingStore, StubEmbedder

DIMENSION_COUNT = 8
PGVECTOR_IMAGE = "pgvector/pgvector:pg16"

# the relational store the embeddings hang off; owned by the CRM application
CRM_SCHEMA = """
create table contacts
( id uuid primary key default gen_random_uuid()
, user_id uuid not null
, first_name text not null
, last_name text
, company text
, job_title text
, how_we_met text
, deleted_at timestamptz
);
create table contact_metadata
( contact_id uuid primary key references contacts(id) on delete cascade
, location text
, interests text[]
);
create table notes
( id uuid primary key default gen_random_uuid()
, contact_id uuid not null references contacts(id) on delete cascade
, content text not null
, created_at timestamptz not null default now()
);
create table tags
( id uuid primary key default gen_random_uuid()
, user_id uuid not null
, name text not null
);
create table contact_tags
( contact_id uuid not null references contacts(id) on delete cascade
, tag_id uuid not null references tags(id) on delete cascade
, primary key (contact_id, tag_id)
);
"""


@pytest.fixture(autouse=True)
def __env_setup():  # type:ignore
    original_env = os.environ.copy()
    yield

    structlog.reset_defaults()

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def source() -> FakeContactSource:
    return FakeContactSource()


@pytest.fixture
def store(source: FakeContactSource) -> FakeEmbeddingStore:
    return FakeEmbeddingStore(source)


@pytest.fixture
def embedder() -> StubEmbedder:
    return StubEmbedder(dimensions=DIMENSION_COUNT)


@pytest.fixture
def composer(source: FakeContactSource) -> ContentComposer:
    return ContentComposer(source)


def start_postgres_container() -> PostgresContainer:
    """Starts the pgvector container, skipping the test when docker is
    unavailable."""
    try:
        # the constructor already talks to the docker daemon
        container = PostgresContainer(
            image=PGVECTOR_IMAGE,
            username="pgcrm",
            password="my-password",
            dbname="crm",
            driver=None,
        )
        container.start()
    except Exception as e:
        pytest.skip(f"docker is not available: {e}")
    return container


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    container = start_postgres_container()
    yield container
    container.stop()


@pytest.fixture
def db_url(postgres_container: PostgresContainer) -> Generator[str, None, None]:
    """A database with the CRM tables and contact_embeddings installed, reset
    for every test."""
    url = postgres_container.get_connection_url()
    with psycopg.connect(url, autocommit=True) as conn:
        conn.execute("drop schema if exists public cascade")
        conn.execute("create schema public")
        conn.execute(CRM_SCHEMA)
    install(url, dimensions=DIMENSION_COUNT)
    yield url
