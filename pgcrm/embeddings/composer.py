"""
Builds the canonical text that represents a contact for embedding.

The output is deterministic for identical underlying data, so its
fingerprint is stable across runs.
"""

import re
from collections.abc import Iterable

from .models import Contact
from .source import ContactSource

RECENT_NOTES_LIMIT = 5
LIST_SEPARATOR = ", "

whitespace_regex = re.compile(r"\s+")


def normalize_whitespace(value: str | None) -> str:
    if value is None:
        return ""
    return whitespace_regex.sub(" ", value).strip()


def _join(values: Iterable[str | None]) -> str:
    parts = [normalize_whitespace(v) for v in values]
    return LIST_SEPARATOR.join(p for p in parts if p)


def compose_content(contact: Contact, notes: list[str], tags: list[str]) -> str:
    """
    Concatenates, in fixed order, the identity fields, how-we-met, location,
    interests, the given notes (expected newest first) and the tag names.

    Tag names are sorted since the store returns them in no particular order.
    Empty or null parts are dropped without a placeholder.
    """
    parts = [
        contact.first_name,
        contact.last_name,
        contact.company,
        contact.job_title,
        contact.how_we_met,
        contact.location,
        _join(contact.interests),
        *notes,
        _join(sorted(tags, key=lambda t: (t.casefold(), t))),
    ]
    normalized = [normalize_whitespace(p) for p in parts]
    return " ".join(p for p in normalized if p)


class ContentComposer:
    """
    Composes embedding content for contacts read through a ContactSource.

    Attributes:
        source (ContactSource): relational store collaborator.
        notes_limit (int): how many of the newest notes are included.
    """

    def __init__(self, source: ContactSource, notes_limit: int = RECENT_NOTES_LIMIT):
        self.source = source
        self.notes_limit = notes_limit

    async def compose(self, contact_id: str, user_id: str) -> str | None:
        """
        Returns the composed content, or None when the contact does not exist,
        is soft-deleted, is not owned by `user_id`, or has nothing to embed.
        """
        contact = await self.source.get_contact(contact_id, user_id)
        if contact is None:
            return None
        notes = await self.source.recent_notes(contact_id, self.notes_limit)
        tags = await self.source.tag_names(contact_id)
        content = compose_content(contact, notes, tags)
        return content or None
