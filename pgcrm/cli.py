import asyncio
import json
import logging
import signal
import sys
from typing import Any

import click
import structlog

from . import __version__
from .configuration import DEFAULT_DB_URL, Settings
from .embeddings import db
from .embeddings.composer import ContentComposer
from .embeddings.errors import EmbeddingProviderError, InvalidRequestError, StoreError
from .embeddings.models import BatchOutcome
from .embeddings.orchestrator import BatchEmbeddingOrchestrator
from .embeddings.processing import ProcessingConfig
from .embeddings.search import DEFAULT_LIMIT, DEFAULT_SIMILARITY_THRESHOLD, SemanticSearch
from .embeddings.source import PostgresContactSource
from .embeddings.store import PostgresEmbeddingStore
from .tracing import configure_tracing


def stderr_logger_factory(*_args: Any) -> structlog.PrintLogger:
    # stdout carries the JSON results
    return structlog.PrintLogger(sys.stderr)


structlog.configure(
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    logger_factory=stderr_logger_factory,
)
log = structlog.get_logger()

LOG_LEVELS = ["DEBUG", "INFO", "WARN", "ERROR", "FATAL", "CRITICAL"]


def get_log_level(level: str) -> int:
    level_upper = level.upper()
    # getLevelName is deprecated for this use, but still there for backwards
    # compatibility and it maps names to numbers on python 3.10.
    level_name = logging.getLevelName(level_upper)  # type: ignore
    if level_upper != "INFO" and isinstance(level_name, int):
        return level_name
    return logging.getLevelName("INFO")  # type: ignore


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(get_log_level(level)),
        logger_factory=stderr_logger_factory,
    )


class ShutdownFlag:
    """Set by SIGINT/SIGTERM so a sweep stops between contacts."""

    def __init__(self) -> None:
        self.requested = False

    def request(self, signum: int, _frame: Any) -> None:
        signame = signal.Signals(signum).name
        log.info(f"received {signame}, finishing the current contact")
        self.requested = True

    def should_continue(self, _attempted: int) -> bool:
        return not self.requested


def outcome_as_dict(outcome: BatchOutcome) -> dict[str, Any]:
    return {
        "processed": outcome.processed,
        "created": outcome.created,
        "updated": outcome.updated,
        "skipped": outcome.skipped,
        "errors": [str(error) for error in outcome.errors],
    }


def _settings(ctx: click.Context) -> Settings:
    return ctx.ensure_object(dict)["settings"]


db_url_option = click.option(
    "-d",
    "--db-url",
    type=click.STRING,
    default=None,
    help=f"The database URL to connect to. Defaults to PGCRM_DB_URL or {DEFAULT_DB_URL}",  # noqa
)
user_id_option = click.option(
    "-u",
    "--user-id",
    type=click.STRING,
    required=True,
    help="The id of the user whose contacts are processed.",
)
log_level_option = click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Defaults to PGCRM_LOG_LEVEL or INFO.",
)


@click.group()
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx: click.Context):
    settings = Settings.from_env()
    ctx.ensure_object(dict)["settings"] = settings
    configure_logging(settings.log_level)
    configure_tracing(settings.trace_enabled)


@cli.command()
@db_url_option
@click.option(
    "--dimensions",
    type=click.IntRange(1, 2000),
    default=None,
    help="Length of the stored vectors. Defaults to PGCRM_EMBEDDING_DIMENSIONS.",
)
@click.option(
    "--strict",
    is_flag=True,
    default=False,
    show_default=True,
    help="Raise an error when the schema is already installed.",
)
@click.pass_context
def install(
    ctx: click.Context, db_url: str | None, dimensions: int | None, strict: bool
) -> None:
    """Install the contact_embeddings table and indexes."""
    from . import install as do_install

    settings = _settings(ctx)
    do_install(
        db_url or settings.db_url,
        dimensions=dimensions or settings.embedding_dimensions,
        strict=strict,
    )
    log.info(f"pgcrm {__version__} installed")


@cli.group()
def embeddings():
    """Maintain and query contact embeddings."""


async def _run_batch(
    settings: Settings,
    db_url: str,
    user_id: str,
    contact_ids: list[str] | None,
    processing: ProcessingConfig,
    after: str | None = None,
    hook: Any = None,
) -> BatchOutcome:
    async with db.connect(db_url, application_name="pgcrm-cli") as conn:
        orchestrator = BatchEmbeddingOrchestrator(
            ContentComposer(PostgresContactSource(conn)),
            settings.create_embedder(),
            PostgresEmbeddingStore(conn),
            processing,
            should_continue_processing_hook=hook,
        )
        return await orchestrator.run(user_id, contact_ids=contact_ids, after=after)


def _processing(
    settings: Settings, batch_size: int | None, concurrency: int | None
) -> ProcessingConfig:
    return settings.processing.model_copy(
        update={
            k: v
            for k, v in {"batch_size": batch_size, "concurrency": concurrency}.items()
            if v is not None
        }
    )


@embeddings.command()
@db_url_option
@user_id_option
@click.option(
    "-i",
    "--contact-id",
    "contact_ids",
    type=click.STRING,
    multiple=True,
    help="Only embed the given contacts. If not provided, a batch of the user's contacts is selected.",  # noqa
    default=[],
)
@click.option("--batch-size", type=click.IntRange(1, 2048), default=None)
@click.option("-c", "--concurrency", type=click.IntRange(1, 10), default=None)
@log_level_option
@click.pass_context
def generate(
    ctx: click.Context,
    db_url: str | None,
    user_id: str,
    contact_ids: tuple[str, ...],
    batch_size: int | None,
    concurrency: int | None,
    log_level: str | None,
) -> None:
    """Run one embedding batch and print the outcome as JSON."""
    settings = _settings(ctx)
    if log_level:
        configure_logging(log_level)
    try:
        outcome = asyncio.run(
            _run_batch(
                settings,
                db_url or settings.db_url,
                user_id,
                list(contact_ids) or None,
                _processing(settings, batch_size, concurrency),
            )
        )
    except (InvalidRequestError, StoreError, ValueError) as e:
        log.error(str(e))
        sys.exit(1)
    click.echo(json.dumps({"success": True, "results": outcome_as_dict(outcome)}))


@embeddings.command()
@db_url_option
@user_id_option
@click.option("--batch-size", type=click.IntRange(1, 2048), default=None)
@click.option("-c", "--concurrency", type=click.IntRange(1, 10), default=None)
@log_level_option
@click.pass_context
def sweep(
    ctx: click.Context,
    db_url: str | None,
    user_id: str,
    batch_size: int | None,
    concurrency: int | None,
    log_level: str | None,
) -> None:
    """Page through every contact of a user, one batch at a time."""
    settings = _settings(ctx)
    if log_level:
        configure_logging(log_level)
    processing = _processing(settings, batch_size, concurrency)
    shutdown = ShutdownFlag()
    signal.signal(signal.SIGINT, shutdown.request)
    signal.signal(signal.SIGTERM, shutdown.request)

    async def do() -> BatchOutcome:
        total = BatchOutcome()
        after: str | None = None
        while not shutdown.requested:
            outcome = await _run_batch(
                settings,
                db_url or settings.db_url,
                user_id,
                None,
                processing,
                after=after,
                hook=shutdown.should_continue,
            )
            total.processed += outcome.processed
            total.created += outcome.created
            total.updated += outcome.updated
            total.skipped += outcome.skipped
            total.errors.extend(outcome.errors)
            total.selected += outcome.selected
            log.info(
                "sweep page finished",
                selected=outcome.selected,
                processed=outcome.processed,
            )
            if outcome.selected < processing.batch_size:
                break
            after = outcome.last_entity_id
        return total

    try:
        total = asyncio.run(do())
    except (InvalidRequestError, StoreError, ValueError) as e:
        log.error(str(e))
        sys.exit(1)
    click.echo(json.dumps({"success": True, "results": outcome_as_dict(total)}))


@embeddings.command()
@db_url_option
@user_id_option
@click.argument("query", type=click.STRING)
@click.option("--limit", type=click.IntRange(1, 100), default=DEFAULT_LIMIT)
@click.option(
    "--threshold",
    type=click.FloatRange(0.0, 1.0),
    default=DEFAULT_SIMILARITY_THRESHOLD,
    show_default=True,
)
@click.pass_context
def search(
    ctx: click.Context,
    db_url: str | None,
    user_id: str,
    query: str,
    limit: int,
    threshold: float,
) -> None:
    """Search a user's contacts by meaning."""
    settings = _settings(ctx)

    async def do():
        async with db.connect(
            db_url or settings.db_url, application_name="pgcrm-cli"
        ) as conn:
            return await SemanticSearch(
                settings.create_embedder(), PostgresEmbeddingStore(conn)
            ).search(user_id, query, limit=limit, similarity_threshold=threshold)

    try:
        result = asyncio.run(do())
    except (InvalidRequestError, EmbeddingProviderError, StoreError, ValueError) as e:
        log.error(str(e))
        sys.exit(1)
    click.echo(
        json.dumps(
            {
                "success": True,
                "query": result.query,
                "results": [m.model_dump() for m in result.matches],
                "count": result.count,
            }
        )
    )


@cli.command()
@click.option("--host", type=click.STRING, default="127.0.0.1", show_default=True)
@click.option("--port", type=click.IntRange(1, 65535), default=8000, show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the HTTP API."""
    import uvicorn

    from .server import create_app

    uvicorn.run(create_app(_settings(ctx)), host=host, port=port)
