class InvalidRequestError(Exception):
    """
    Raised when a request is missing required fields or carries malformed
    values. Surfaced to the caller immediately, never retried.
    """

    msg = "invalid request"


class AuthorizationError(Exception):
    """
    Raised when the caller's identity is missing or cannot be verified.
    """

    msg = "unauthorized"


class EmbeddingProviderError(Exception):
    """
    Raised when an embedding provider API request fails.
    """

    msg = "embedding provider failed"


class StoreError(Exception):
    """
    Raised when a read or write against the relational store fails.
    """

    msg = "store request failed"
