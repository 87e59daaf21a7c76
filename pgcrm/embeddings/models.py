from datetime import datetime

from pydantic import BaseModel, Field

SOURCE_TEXT_MAX_LENGTH = 500


class ContactDescriptor(BaseModel):
    """
    Identifies a contact to embed: its id plus the id of the user (scope)
    that owns it.
    """

    id: str
    user_id: str


class Contact(ContactDescriptor):
    """
    The subset of a contact row that feeds the composed embedding content.

    `location` and `interests` come from the optional `contact_metadata` row.
    """

    first_name: str
    last_name: str | None = None
    company: str | None = None
    job_title: str | None = None
    how_we_met: str | None = None
    location: str | None = None
    interests: list[str] = Field(default_factory=list)


class EmbeddingRecord(BaseModel):
    """
    One row of `contact_embeddings`. At most one exists per contact.
    """

    contact_id: str
    user_id: str
    embedding: list[float]
    content_hash: str
    source_text: str | None = None
    model_version: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SimilarityMatch(BaseModel):
    contact_id: str
    similarity: float
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    job_title: str | None = None


class ItemError(BaseModel):
    contact_id: str
    message: str

    def __str__(self) -> str:
        return f"{self.contact_id}: {self.message}"


class BatchOutcome(BaseModel):
    """
    Aggregate of one orchestration run.

    Attributes:
        processed: contacts whose embedding was written.
        created: writes that inserted a new record.
        updated: writes that replaced an existing record.
        skipped: contacts with no content or an unchanged fingerprint.
        errors: per-contact failures, in the order the contacts were given.
        selected: contacts considered by the run.
        last_entity_id: id of the last selected contact, usable as the
            cursor for the next sweep page.
    """

    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[ItemError] = Field(default_factory=list)
    selected: int = 0
    last_entity_id: str | None = None


class SearchResult(BaseModel):
    query: str
    matches: list[SimilarityMatch]

    @property
    def count(self) -> int:
        return len(self.matches)


def truncate_source_text(text: str) -> str:
    return text[:SOURCE_TEXT_MAX_LENGTH]
