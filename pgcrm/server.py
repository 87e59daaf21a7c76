import time
from collections.abc import AsyncIterator
from typing import Annotated, Any

import psycopg
import structlog
from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .auth import (
    StaticTokenVerifier,
    SupabaseTokenVerifier,
    TokenVerifier,
    token_from_header,
)
from .configuration import Settings
from .embeddings import db
from .embeddings.composer import ContentComposer
from .embeddings.embeddings import Embedder
from .embeddings.errors import (
    AuthorizationError,
    EmbeddingProviderError,
    InvalidRequestError,
    StoreError,
)
from .embeddings.orchestrator import BatchEmbeddingOrchestrator
from .embeddings.processing import DEFAULT_BATCH_SIZE
from .embeddings.search import (
    DEFAULT_LIMIT,
    DEFAULT_SIMILARITY_THRESHOLD,
    SemanticSearch,
    validate_query,
)
from .embeddings.source import ContactSource, PostgresContactSource
from .embeddings.store import EmbeddingStore, PostgresEmbeddingStore

logger = structlog.get_logger()


class GenerateEmbeddingsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    contact_id: str | None = Field(default=None, alias="contactId")
    batch_size: int = Field(
        default=DEFAULT_BATCH_SIZE, alias="batchSize", ge=1, le=2048
    )


class BatchResults(BaseModel):
    processed: int
    created: int
    updated: int
    skipped: int
    errors: list[str]


class GenerateEmbeddingsResponse(BaseModel):
    success: bool
    results: BatchResults


class SemanticSearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # validated by SemanticSearch so a bad query gets its own error message
    query: Any = None
    limit: int = Field(default=DEFAULT_LIMIT, ge=1, le=100)
    similarity_threshold: float = Field(
        default=DEFAULT_SIMILARITY_THRESHOLD,
        alias="similarityThreshold",
        ge=0.0,
        le=1.0,
    )


class SearchMatch(BaseModel):
    contact_id: str
    similarity: float
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    job_title: str | None = None


class SemanticSearchResponse(BaseModel):
    success: bool
    query: str
    results: list[SearchMatch]
    count: int


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_token_verifier(
    settings: Annotated[Settings, Depends(get_settings)],
) -> TokenVerifier:
    if settings.supabase_url and settings.supabase_service_role_key:
        return SupabaseTokenVerifier(
            settings.supabase_url, settings.supabase_service_role_key
        )
    if settings.api_tokens:
        return StaticTokenVerifier(settings.api_tokens)
    raise AuthorizationError("Unauthorized")


async def get_user_id(
    verifier: Annotated[TokenVerifier, Depends(get_token_verifier)],
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    token = token_from_header(authorization)
    return await verifier.verify(token)


def get_search_request(
    body: SemanticSearchRequest | None = None,
) -> SemanticSearchRequest:
    """Rejects a bad query before any connection or client is set up."""
    body = body or SemanticSearchRequest()
    validate_query(body.query)
    return body


async def get_connection(
    settings: Annotated[Settings, Depends(get_settings)],
) -> AsyncIterator[psycopg.AsyncConnection]:
    async with db.connect(settings.db_url, application_name="pgcrm-api") as conn:
        yield conn


def get_contact_source(
    conn: Annotated[psycopg.AsyncConnection, Depends(get_connection)],
) -> ContactSource:
    return PostgresContactSource(conn)


def get_embedding_store(
    conn: Annotated[psycopg.AsyncConnection, Depends(get_connection)],
) -> EmbeddingStore:
    return PostgresEmbeddingStore(conn)


def get_embedder(settings: Annotated[Settings, Depends(get_settings)]) -> Embedder:
    return settings.create_embedder()


def _error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def create_app(settings: Settings | None = None) -> FastAPI:
    """Builds the API. Settings are read from the environment when not given."""
    app = FastAPI(title="pgcrm", version=__version__)
    app.state.settings = settings or Settings.from_env()

    @app.exception_handler(InvalidRequestError)
    async def invalid_request_handler(
        _: Request, exc: InvalidRequestError
    ) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, str(exc) or exc.msg)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        _: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            "Invalid request body",
            details=jsonable_encoder(exc.errors()),
        )

    @app.exception_handler(AuthorizationError)
    async def authorization_error_handler(
        _: Request, exc: AuthorizationError
    ) -> JSONResponse:
        return _error_response(status.HTTP_401_UNAUTHORIZED, str(exc) or exc.msg)

    @app.exception_handler(EmbeddingProviderError)
    @app.exception_handler(StoreError)
    async def upstream_error_handler(_: Request, exc: Exception) -> JSONResponse:
        await logger.aerror("request failed", error=str(exc))
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            str(exc) or "Internal server error",
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        _: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            return _error_response(exc.status_code, "Method not allowed")
        return _error_response(exc.status_code, str(exc.detail))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "version": __version__}

    @app.post("/generate-embeddings")
    async def generate_embeddings(
        user_id: Annotated[str, Depends(get_user_id)],
        settings: Annotated[Settings, Depends(get_settings)],
        source: Annotated[ContactSource, Depends(get_contact_source)],
        store: Annotated[EmbeddingStore, Depends(get_embedding_store)],
        embedder: Annotated[Embedder, Depends(get_embedder)],
        body: GenerateEmbeddingsRequest | None = None,
    ) -> GenerateEmbeddingsResponse:
        body = body or GenerateEmbeddingsRequest()
        hook = None
        if settings.batch_time_budget is not None:
            deadline = time.monotonic() + settings.batch_time_budget

            def hook(_attempted: int) -> bool:
                return time.monotonic() < deadline

        orchestrator = BatchEmbeddingOrchestrator(
            ContentComposer(source),
            embedder,
            store,
            settings.processing,
            should_continue_processing_hook=hook,
        )
        outcome = await orchestrator.run(
            user_id,
            contact_ids=[body.contact_id] if body.contact_id else None,
            batch_size=body.batch_size,
        )
        return GenerateEmbeddingsResponse(
            success=True,
            results=BatchResults(
                processed=outcome.processed,
                created=outcome.created,
                updated=outcome.updated,
                skipped=outcome.skipped,
                errors=[str(error) for error in outcome.errors],
            ),
        )

    @app.post("/semantic-search")
    async def semantic_search(
        user_id: Annotated[str, Depends(get_user_id)],
        body: Annotated[SemanticSearchRequest, Depends(get_search_request)],
        store: Annotated[EmbeddingStore, Depends(get_embedding_store)],
        embedder: Annotated[Embedder, Depends(get_embedder)],
    ) -> SemanticSearchResponse:
        result = await SemanticSearch(embedder, store).search(
            user_id,
            body.query,
            limit=body.limit,
            similarity_threshold=body.similarity_threshold,
        )
        return SemanticSearchResponse(
            success=True,
            query=result.query,
            results=[SearchMatch(**m.model_dump()) for m in result.matches],
            count=result.count,
        )

    return app
