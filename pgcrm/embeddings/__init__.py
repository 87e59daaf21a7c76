from .composer import ContentComposer, compose_content
from .embedders import OpenAI
from .embeddings import Embedder, EmbeddingVector
from .errors import (
    AuthorizationError,
    EmbeddingProviderError,
    InvalidRequestError,
    StoreError,
)
from .fingerprint import ChangeDecision, fingerprint, should_reembed
from .models import BatchOutcome, SearchResult, SimilarityMatch
from .orchestrator import BatchEmbeddingOrchestrator
from .processing import ProcessingConfig
from .search import SemanticSearch
from .source import ContactSource, PostgresContactSource
from .store import EmbeddingStore, PostgresEmbeddingStore

__all__ = [
    "AuthorizationError",
    "BatchEmbeddingOrchestrator",
    "BatchOutcome",
    "ChangeDecision",
    "ContactSource",
    "ContentComposer",
    "Embedder",
    "EmbeddingProviderError",
    "EmbeddingStore",
    "EmbeddingVector",
    "InvalidRequestError",
    "OpenAI",
    "PostgresContactSource",
    "PostgresEmbeddingStore",
    "ProcessingConfig",
    "SearchResult",
    "SemanticSearch",
    "SimilarityMatch",
    "StoreError",
    "compose_content",
    "fingerprint",
    "should_reembed",
]
