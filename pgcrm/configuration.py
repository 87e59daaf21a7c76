import json
import os

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from .embeddings.embedders import OpenAI
from .embeddings.processing import DEFAULT_BATCH_SIZE, ProcessingConfig

DEFAULT_DB_URL = "postgres://postgres@localhost:5432/postgres"


def asbool(value: str | None) -> bool:
    """Convert the given String to a boolean object.

    Accepted values are `True` and `1`.
    """
    if value is None:
        return False

    return value.lower() in ("true", "1")


def parse_api_tokens(raw: str | None) -> dict[str, str]:
    """Parses `token:user_id` pairs, comma separated, or a JSON object that
    maps tokens to user ids."""
    if raw is None or not raw.strip():
        return {}
    raw = raw.strip()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        return {
            str(token).strip(): str(user).strip()
            for token, user in payload.items()
            if str(token).strip() and str(user).strip()
        }
    tokens: dict[str, str] = {}
    for item in raw.split(","):
        token, sep, user = item.partition(":")
        if sep and token.strip() and user.strip():
            tokens[token.strip()] = user.strip()
    return tokens


class Settings(BaseModel):
    """
    Runtime settings. Immutable once loaded; every request builds its own
    connections and clients from them.
    """

    db_url: str = DEFAULT_DB_URL
    openai_api_key: str | None = None
    embedding_model: str = "text-embedding-ada-002"
    embedding_dimensions: int = 1536
    openai_base_url: str | None = None
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    api_tokens: dict[str, str] = Field(default_factory=dict)
    log_level: str = "INFO"
    batch_time_budget: float | None = None
    trace_enabled: bool = False

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "Settings":
        if load_env_file:
            load_dotenv(dotenv_path=find_dotenv(usecwd=True))
        return cls(
            db_url=os.getenv("PGCRM_DB_URL", DEFAULT_DB_URL),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            embedding_model=os.getenv(
                "PGCRM_EMBEDDING_MODEL", "text-embedding-ada-002"
            ),
            embedding_dimensions=int(os.getenv("PGCRM_EMBEDDING_DIMENSIONS", "1536")),
            openai_base_url=os.getenv("OPENAI_BASE_URL"),
            processing=ProcessingConfig(
                batch_size=int(
                    os.getenv("PGCRM_BATCH_SIZE", str(DEFAULT_BATCH_SIZE))
                ),
                concurrency=int(os.getenv("PGCRM_CONCURRENCY", "1")),
                provider_retries=int(os.getenv("PGCRM_PROVIDER_RETRIES", "0")),
            ),
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
            api_tokens=parse_api_tokens(os.getenv("PGCRM_API_TOKENS")),
            log_level=os.getenv("PGCRM_LOG_LEVEL", "INFO"),
            trace_enabled=asbool(os.getenv("DD_TRACE_ENABLED")),
            batch_time_budget=(
                float(os.environ["PGCRM_BATCH_TIME_BUDGET"])
                if os.getenv("PGCRM_BATCH_TIME_BUDGET")
                else None
            ),
        )

    def create_embedder(self) -> OpenAI:
        """Builds the OpenAI embedder with the API key, when one is configured."""
        embedder = OpenAI(
            model=self.embedding_model,
            dimensions=self.embedding_dimensions,
            base_url=self.openai_base_url,
        )
        # a missing key fails each embedding request, not construction
        if self.openai_api_key is not None:
            embedder.set_api_key({"OPENAI_API_KEY": self.openai_api_key})
        return embedder
