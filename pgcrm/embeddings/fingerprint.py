import hashlib
from dataclasses import dataclass


@dataclass(frozen=True)
class ChangeDecision:
    fingerprint: str
    needs_update: bool


def fingerprint(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded text. Used only to detect
    content changes."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def should_reembed(text: str | None, existing_fingerprint: str | None) -> ChangeDecision:
    """
    Decides whether `text` has to be embedded again.

    Empty text never needs an embedding. Otherwise an update is needed unless
    a stored fingerprint exists and equals the fingerprint of `text`.
    """
    if not text:
        return ChangeDecision(fingerprint="", needs_update=False)
    new_fingerprint = fingerprint(text)
    return ChangeDecision(
        fingerprint=new_fingerprint,
        needs_update=existing_fingerprint != new_fingerprint,
    )
