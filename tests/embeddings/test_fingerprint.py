import hashlib

import pytest

from pgcrm.embeddings.fingerprint import fingerprint, should_reembed


def test_fingerprint_is_sha256_hex():
    assert fingerprint("Ada Lovelace") == hashlib.sha256(b"Ada Lovelace").hexdigest()
    assert len(fingerprint("x")) == 64


def test_fingerprint_is_stable():
    assert fingerprint("same text") == fingerprint("same text")
    assert fingerprint("same text") != fingerprint("same text.")


@pytest.mark.parametrize(
    "text,existing,expected",
    [
        ("Ada", None, True),
        ("Ada", fingerprint("Ada"), False),
        ("Ada", fingerprint("Ada Lovelace"), True),
        ("", None, False),
        ("", fingerprint("Ada"), False),
        (None, None, False),
    ],
)
def test_should_reembed(text: str | None, existing: str | None, expected: bool):
    decision = should_reembed(text, existing)

    assert decision.needs_update is expected


def test_should_reembed_returns_new_fingerprint():
    decision = should_reembed("Ada", fingerprint("Grace"))

    assert decision.fingerprint == fingerprint("Ada")


def test_should_reembed_empty_text_has_no_fingerprint():
    assert should_reembed("", None).fingerprint == ""
