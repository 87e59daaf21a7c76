import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TypeAlias

import structlog
from ddtrace.trace import tracer

from .errors import EmbeddingProviderError

logger = structlog.get_logger()

EmbeddingVector: TypeAlias = list[float]


@dataclass
class Usage:
    """The number of tokens used in an embedding request"""

    prompt_tokens: int
    total_tokens: int


@dataclass
class EmbeddingResponse:
    """A generic embedding response"""

    embeddings: list[list[float]]
    usage: Usage


class Embedder(ABC):
    """
    Abstract base class for an Embedder.

    An embedder turns text into fixed-length vectors by calling a hosted
    provider. It never caches and never retries: every failure surfaces as an
    EmbeddingProviderError and the caller decides what to do with it.
    """

    @property
    @abstractmethod
    def model_version(self) -> str:
        """The model name recorded next to every stored embedding."""

    @property
    @abstractmethod
    def vector_dimensions(self) -> int:
        """The length every returned vector must have."""

    @abstractmethod
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        """
        Call the embed API
        :param documents:
        :return:
        """

    def _prepare(self, documents: list[str]) -> list[str]:
        """Hook to adjust documents before they are sent, e.g. truncation."""
        return documents

    def _error_message(self, e: Exception) -> str:
        return str(e) or type(e).__name__

    async def embed(self, documents: list[str]) -> list[EmbeddingVector]:
        """
        Embeds a list of documents into vectors with a single API request.

        Args:
            documents (list[str]): the documents to embed.

        Returns:
            list[EmbeddingVector]: one vector per document, in order.

        Raises:
            EmbeddingProviderError: on transport failures, non-2xx responses,
                or responses that don't hold one vector of the expected
                dimensions per document.
        """
        with tracer.trace("embeddings.embedder.create"):
            current_span = tracer.current_span()
            if current_span:
                current_span.set_tag("documents.total", len(documents))
            start_time = time.perf_counter()
            try:
                response = await self.call_embed_api(self._prepare(documents))
            except EmbeddingProviderError:
                raise
            except Exception as e:
                raise EmbeddingProviderError(self._error_message(e)) from e
            request_duration = time.perf_counter() - start_time
            if current_span:
                current_span.set_metric(
                    "embeddings.embedder.create_request.time.seconds",
                    request_duration,
                )
            await logger.adebug(
                "embedding request finished",
                duration=request_duration,
                documents=len(documents),
                usage=response.usage,
            )

        if len(response.embeddings) != len(documents):
            raise EmbeddingProviderError(
                f"malformed response: expected {len(documents)} embeddings, "
                f"got {len(response.embeddings)}"
            )
        for embedding in response.embeddings:
            if len(embedding) != self.vector_dimensions:
                raise EmbeddingProviderError(
                    f"malformed response: expected {self.vector_dimensions} "
                    f"dimensions, got {len(embedding)}"
                )
        return response.embeddings

    async def embed_one(self, text: str) -> EmbeddingVector:
        """Embeds a single text."""
        embeddings = await self.embed([text])
        return embeddings[0]


class BaseURLMixin:
    """
    A mixin class that provides functionality for managing base URLs.

    Attributes:
        base_url (str | None): The base URL for the API.
    """

    base_url: str | None = None


class ApiKeyMixin:
    """
    A mixin class that provides functionality for managing API keys.

    Attributes:
        api_key_name (str): The name of the API key attribute.
    """

    api_key_name: str | None = None
    _api_key_: str | None = None

    @property
    def _api_key(self) -> str:
        """
        Retrieves the stored API key.

        Raises:
            ValueError: If the API key has not been set.

        Returns:
            str: The API key.
        """
        if self._api_key_ is None:
            raise ValueError(f"API key not set: {self.api_key_name}")
        return self._api_key_

    def set_api_key(self, secrets: dict[str, str | None]):
        """
        Sets the API key from the provided secrets.

        Args:
            secrets (dict[str, str | None]): Secret values keyed by name.

        Raises:
            ValueError: If the API key is missing from the secrets.
        """

        api_key = (
            secrets.get(self.api_key_name, None)
            if self.api_key_name is not None
            else None
        )
        if api_key is None:
            raise ValueError(f"missing API key: {self.api_key_name}")
        self._api_key_ = api_key
