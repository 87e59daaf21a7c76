import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import numpy as np
from typing_extensions import override

from pgcrm.embeddings.embeddings import Embedder, EmbeddingResponse, Usage
from pgcrm.embeddings.errors import StoreError
from pgcrm.embeddings.models import Contact, EmbeddingRecord, SimilarityMatch

USER_A = "00000000-0000-0000-0000-00000000000a"
USER_B = "00000000-0000-0000-0000-00000000000b"


def contact_id(n: int) -> str:
    return f"00000000-0000-0000-0000-{n:012d}"


def hash_vector(text: str, dimensions: int) -> list[float]:
    """Deterministic unit vector derived from the text."""
    digest = b""
    counter = 0
    while len(digest) < dimensions:
        digest += hashlib.sha256(f"{counter}:{text}".encode()).digest()
        counter += 1
    raw = np.frombuffer(digest[:dimensions], dtype=np.uint8).astype(np.float64)
    raw = raw - 127.5
    return (raw / np.linalg.norm(raw)).tolist()


class StubEmbedder(Embedder):
    """
    Embeds text into deterministic vectors without any network access.

    Texts containing any of `fail_on` raise, like a rate limited provider
    would. `vectors` pins the vector returned for an exact text.
    """

    def __init__(
        self,
        dimensions: int = 8,
        fail_on: set[str] | None = None,
        vectors: dict[str, list[float]] | None = None,
        failures_before_success: int = 0,
    ):
        self.dimensions = dimensions
        self.fail_on = fail_on or set()
        self.vectors = vectors or {}
        self.failures_before_success = failures_before_success
        self.calls: list[str] = []

    @property
    @override
    def model_version(self) -> str:
        return "stub-embedding"

    @property
    @override
    def vector_dimensions(self) -> int:
        return self.dimensions

    @override
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        self.calls.extend(documents)
        if self.failures_before_success > 0:
            self.failures_before_success -= 1
            raise RuntimeError("Too Many Requests")
        for document in documents:
            for marker in self.fail_on:
                if marker in document:
                    raise RuntimeError("Too Many Requests")
        embeddings = [
            self.vectors.get(d) or hash_vector(d, self.dimensions) for d in documents
        ]
        return EmbeddingResponse(embeddings=embeddings, usage=Usage(0, 0))


@dataclass
class StoredContact:
    contact: Contact
    deleted: bool = False
    notes: list[tuple[datetime, str]] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


class FakeContactSource:
    """ContactSource over plain dictionaries."""

    def __init__(self) -> None:
        self.contacts: dict[str, StoredContact] = {}
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def add(
        self,
        id: str,
        user_id: str = USER_A,
        first_name: str = "Ada",
        notes: list[str] | None = None,
        tags: list[str] | None = None,
        **fields: object,
    ) -> Contact:
        contact = Contact(id=id, user_id=user_id, first_name=first_name, **fields)  # type: ignore[arg-type]
        self.contacts[id] = StoredContact(contact=contact, tags=list(tags or []))
        for note in notes or []:
            self.add_note(id, note)
        return contact

    def add_note(self, id: str, content: str) -> None:
        self._clock += timedelta(minutes=1)
        self.contacts[id].notes.append((self._clock, content))

    def delete(self, id: str) -> None:
        self.contacts[id].deleted = True

    def is_visible(self, id: str) -> bool:
        stored = self.contacts.get(id)
        return stored is not None and not stored.deleted

    def owner(self, id: str) -> str | None:
        stored = self.contacts.get(id)
        return stored.contact.user_id if stored is not None else None

    async def get_contact(self, contact_id: str, user_id: str) -> Contact | None:
        stored = self.contacts.get(contact_id)
        if stored is None or stored.deleted or stored.contact.user_id != user_id:
            return None
        return stored.contact

    async def recent_notes(self, contact_id: str, limit: int) -> list[str]:
        notes = sorted(self.contacts[contact_id].notes, reverse=True)
        return [content for _, content in notes[:limit]]

    async def tag_names(self, contact_id: str) -> list[str]:
        return list(self.contacts[contact_id].tags)

    async def list_contact_ids(
        self, user_id: str, limit: int, after: str | None = None
    ) -> list[str]:
        ids = sorted(
            id
            for id, stored in self.contacts.items()
            if stored.contact.user_id == user_id and not stored.deleted
        )
        if after is not None:
            ids = [id for id in ids if id > after]
        return ids[:limit]


class FakeEmbeddingStore:
    """
    EmbeddingStore over a dictionary keyed by contact id, with the same
    ownership check and similarity contract as the Postgres store.
    """

    def __init__(self, source: FakeContactSource):
        self.source = source
        self.records: dict[str, EmbeddingRecord] = {}
        self.upserts = 0
        self.fail_on: set[str] = set()

    async def get_fingerprint(self, contact_id: str) -> str | None:
        record = self.records.get(contact_id)
        return record.content_hash if record is not None else None

    async def upsert(
        self,
        contact_id: str,
        user_id: str,
        embedding: list[float],
        content_hash: str,
        source_text: str,
        model_version: str,
    ) -> bool:
        if contact_id in self.fail_on:
            raise StoreError("failed to write embedding: connection reset")
        if self.source.owner(contact_id) != user_id:
            raise StoreError(
                f"scope mismatch: contact {contact_id} is not owned by user {user_id}"
            )
        self.upserts += 1
        created = contact_id not in self.records
        self.records[contact_id] = EmbeddingRecord(
            contact_id=contact_id,
            user_id=user_id,
            embedding=embedding,
            content_hash=content_hash,
            source_text=source_text,
            model_version=model_version,
        )
        return created

    async def find_similar(
        self,
        user_id: str,
        query_embedding: list[float],
        limit: int,
        similarity_threshold: float,
    ) -> list[SimilarityMatch]:
        query = np.array(query_embedding)
        matches: list[SimilarityMatch] = []
        for record in self.records.values():
            if record.user_id != user_id or not self.source.is_visible(
                record.contact_id
            ):
                continue
            vector = np.array(record.embedding)
            similarity = float(
                np.dot(query, vector) / (np.linalg.norm(query) * np.linalg.norm(vector))
            )
            if similarity < similarity_threshold:
                continue
            contact = self.source.contacts[record.contact_id].contact
            matches.append(
                SimilarityMatch(
                    contact_id=record.contact_id,
                    similarity=similarity,
                    first_name=contact.first_name,
                    last_name=contact.last_name,
                    company=contact.company,
                    job_title=contact.job_title,
                )
            )
        matches.sort(key=lambda m: (-m.similarity, m.contact_id))
        return matches[:limit]
