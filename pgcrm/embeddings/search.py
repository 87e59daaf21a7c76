import structlog
from ddtrace.trace import tracer

from .embeddings import Embedder
from .errors import InvalidRequestError
from .models import SearchResult
from .store import EmbeddingStore

logger = structlog.get_logger()

DEFAULT_LIMIT = 10
DEFAULT_SIMILARITY_THRESHOLD = 0.7


def validate_query(query: object) -> str:
    if not isinstance(query, str) or not query:
        raise InvalidRequestError("Query is required")
    return query


class SemanticSearch:
    """
    Finds the contacts of a user whose embeddings are closest to a free-form
    query.

    Attributes:
        embedder (Embedder): embeds the query text. Must be the same model
            used to embed the contacts.
        store (EmbeddingStore): serves the similarity query.
    """

    def __init__(self, embedder: Embedder, store: EmbeddingStore):
        self.embedder = embedder
        self.store = store

    @tracer.wrap(name="embeddings.search")
    async def search(
        self,
        user_id: str,
        query: object,
        limit: int = DEFAULT_LIMIT,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> SearchResult:
        """Search the contacts of `user_id` by meaning.

        An empty match list is a valid result when nothing clears the
        threshold. Provider and store failures are not caught here.

        Args:
            user_id: the scope to search in.
            query: the query text. Anything but a non-empty string is rejected
                before the provider is called.
            limit: maximum number of matches (default: 10).
            similarity_threshold: minimum similarity of a match (default: 0.7).

        Returns:
            SearchResult with matches ordered by descending similarity.

        Raises:
            InvalidRequestError: on a missing query or out-of-range options.
            EmbeddingProviderError: if the query cannot be embedded.
            StoreError: if the similarity query fails.
        """
        query = validate_query(query)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidRequestError("limit must be a positive integer")
        if isinstance(similarity_threshold, bool) or not isinstance(
            similarity_threshold, int | float
        ):
            raise InvalidRequestError("similarityThreshold must be a number")

        query_embedding = await self.embedder.embed_one(query)
        matches = await self.store.find_similar(
            user_id, query_embedding, limit, float(similarity_threshold)
        )
        await logger.adebug(
            "semantic search finished", user_id=user_id, matches=len(matches)
        )
        return SearchResult(query=query, matches=matches)
