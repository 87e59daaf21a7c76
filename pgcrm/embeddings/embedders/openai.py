from functools import cached_property
from typing import TYPE_CHECKING, Any, Literal

import ijson  # type: ignore
from pydantic import BaseModel, PrivateAttr
from typing_extensions import override

if TYPE_CHECKING:
    import openai
    import tiktoken
    from openai import AsyncAPIResponse, resources, types


from ..embeddings import (
    ApiKeyMixin,
    BaseURLMixin,
    Embedder,
    EmbeddingResponse,
    Usage,
    logger,
)

EMBEDDING_MODEL_CONTEXT_LENGTH = {
    "text-embedding-ada-002": 8191,
    "text-embedding-3-small": 8191,
    "text-embedding-3-large": 8191,
}

# ijson reads the input in chunks of buf_size. We wrap the streaming response
# in the read() interface ijson expects and iterate it with the same size.
RESPONSE_READ_BUF_SIZE = 64 * 1024


class ResponseWithRead:
    def __init__(self, response: "AsyncAPIResponse[types.CreateEmbeddingResponse]"):
        self.iter = response.iter_bytes(RESPONSE_READ_BUF_SIZE)

    async def read(self, n: int) -> bytes:
        if n == 0:
            return b""

        return await anext(self.iter, b"")


class OpenAI(ApiKeyMixin, BaseURLMixin, BaseModel, Embedder):
    """
    Embedder that uses OpenAI's API to embed documents into vector representations.

    The client is built with retries disabled; retrying is up to the caller.

    Attributes:
        implementation (Literal["openai"]): The literal identifier for this
            implementation.
        model (str): The name of the OpenAI model used for embeddings.
        dimensions (int): The length of the returned vectors.
        user (str | None): Optional user identifier for OpenAI API usage.
        truncate (bool): Truncate input to the model's context length before
            sending it.
    """

    implementation: Literal["openai"] = "openai"
    model: str = "text-embedding-ada-002"
    dimensions: int = 1536
    user: str | None = None
    truncate: bool = True
    api_key_name: str | None = "OPENAI_API_KEY"
    base_url: str | None = None

    _http_client: Any = PrivateAttr(default=None)

    @property
    @override
    def model_version(self) -> str:
        return self.model

    @property
    @override
    def vector_dimensions(self) -> int:
        return self.dimensions

    @cached_property
    def _openai_dimensions(self) -> "int | openai.NotGiven":
        # Note: deferred import to avoid import overhead
        import openai

        if self.model == "text-embedding-ada-002":
            if self.dimensions != 1536:
                raise ValueError("dimensions must be 1536 for text-embedding-ada-002")
            return openai.NOT_GIVEN
        return self.dimensions

    @cached_property
    def _openai_user(self) -> "str | openai.NotGiven":
        # Note: deferred import to avoid import overhead
        import openai

        return self.user if self.user is not None else openai.NOT_GIVEN

    @cached_property
    def _embedder(self) -> "resources.AsyncEmbeddingsWithStreamingResponse":
        import openai

        return openai.AsyncOpenAI(
            base_url=self.base_url,
            api_key=self._api_key,
            max_retries=0,
            http_client=self._http_client,
        ).embeddings.with_streaming_response

    @override
    def _error_message(self, e: Exception) -> str:
        import openai

        if isinstance(e, openai.APIStatusError):
            reason = e.response.reason_phrase or str(e.status_code)
            return f"OpenAI API error: {reason}"
        if isinstance(e, openai.APIError):
            return f"OpenAI API error: {e.message}"
        return super()._error_message(e)

    @override
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        embeddings: list[list[float]] = []
        current_embedding: list[float] = []
        total_tokens = 0
        prompt_tokens = 0
        async with self._embedder.create(
            input=documents,
            model=self.model,
            dimensions=self._openai_dimensions,
            user=self._openai_user,
            encoding_format="float",
        ) as streaming_response:
            # `ijson.items` accepts a single prefix and we need both the
            # embeddings and the usage, so we walk the raw events instead.
            async for prefix, event, value in ijson.parse_async(
                ResponseWithRead(streaming_response),
                use_float=True,
                buf_size=RESPONSE_READ_BUF_SIZE,
            ):
                if prefix == "data.item.embedding" and event == "start_array":
                    current_embedding = []
                if prefix == "data.item.embedding" and event == "end_array":
                    embeddings.append(current_embedding)
                elif prefix == "data.item.embedding.item" and event == "number":
                    current_embedding.append(value)
                elif prefix == "usage.prompt_tokens" and event == "number":
                    prompt_tokens = value
                elif prefix == "usage.total_tokens" and event == "number":
                    total_tokens = value

        return EmbeddingResponse(
            embeddings=embeddings, usage=Usage(prompt_tokens, total_tokens)
        )

    @override
    def _prepare(self, documents: list[str]) -> list[str]:
        encoder = self._encoder if self.truncate else None
        context_length = self._context_length
        if encoder is None or context_length is None:
            return documents
        prepared: list[str] = []
        for document in documents:
            tokenized = encoder.encode(document)
            if len(tokenized) > context_length:
                logger.warning(
                    f"document truncated from {len(tokenized)} to {context_length} tokens"  # noqa
                )
                document = encoder.decode(tokenized[:context_length])
            prepared.append(document)
        return prepared

    @cached_property
    def _encoder(self) -> "tiktoken.Encoding | None":
        # Note: deferred import to avoid import overhead
        import tiktoken

        try:
            encoder = tiktoken.encoding_for_model(self.model)
        except KeyError:
            logger.warning(f"Tokenizer for the model {self.model} not found.")
            return None
        return encoder

    @cached_property
    def _context_length(self) -> int | None:
        return EMBEDDING_MODEL_CONTEXT_LENGTH.get(self.model, None)
