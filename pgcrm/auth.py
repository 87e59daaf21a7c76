from typing import Protocol

import httpx
import structlog

from .embeddings.errors import AuthorizationError

logger = structlog.get_logger()

BEARER_PREFIX = "Bearer "


def token_from_header(authorization: str | None) -> str:
    """Extracts the token from an `Authorization: Bearer <token>` header.

    Raises:
        AuthorizationError: if the header is missing or holds no token.
    """
    if not authorization:
        raise AuthorizationError("Missing authorization")
    token = authorization.removeprefix(BEARER_PREFIX).strip()
    if not token:
        raise AuthorizationError("Unauthorized")
    return token


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> str:
        """Returns the id of the user the token belongs to.

        Raises:
            AuthorizationError: if the token is invalid.
        """
        ...


class StaticTokenVerifier:
    """Resolves tokens from a fixed token -> user id map."""

    def __init__(self, tokens: dict[str, str]):
        self.tokens = tokens

    async def verify(self, token: str) -> str:
        user_id = self.tokens.get(token)
        if user_id is None:
            raise AuthorizationError("Unauthorized")
        return user_id


class SupabaseTokenVerifier:
    """
    Resolves user tokens with the Supabase auth API.

    Attributes:
        url (str): the Supabase project URL.
        api_key (str): the key sent in the `apikey` header.
        timeout (float): request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def verify(self, token: str) -> str:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            try:
                response = await client.get(
                    f"{self.url}/auth/v1/user",
                    headers={
                        "apikey": self.api_key,
                        "Authorization": f"{BEARER_PREFIX}{token}",
                    },
                )
            except httpx.HTTPError as e:
                await logger.awarning("token verification failed", error=str(e))
                raise AuthorizationError("Unauthorized") from e

        if response.status_code != httpx.codes.OK:
            raise AuthorizationError("Unauthorized")
        user_id = response.json().get("id")
        if not user_id:
            raise AuthorizationError("Unauthorized")
        return str(user_id)
