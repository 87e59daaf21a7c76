import pytest

from pgcrm.embeddings.errors import EmbeddingProviderError, InvalidRequestError
from pgcrm.embeddings.fingerprint import fingerprint
from pgcrm.embeddings.search import SemanticSearch

from .utils import (
    USER_A,
    USER_B,
    FakeContactSource,
    FakeEmbeddingStore,
    StubEmbedder,
    contact_id,
)

QUERY = "engineers in London"
QUERY_VECTOR = [1.0, 0.0, 0.0]


async def seed(
    store: FakeEmbeddingStore,
    id: str,
    vector: list[float],
    user_id: str = USER_A,
) -> None:
    await store.upsert(id, user_id, vector, fingerprint(id), id, "stub-embedding")


@pytest.fixture
def search_embedder() -> StubEmbedder:
    return StubEmbedder(dimensions=3, vectors={QUERY: QUERY_VECTOR})


@pytest.fixture
async def seeded_store(
    source: FakeContactSource, store: FakeEmbeddingStore
) -> FakeEmbeddingStore:
    source.add(contact_id(1), first_name="Ada", company="Engines")
    source.add(contact_id(2), first_name="Grace")
    source.add(contact_id(3), first_name="Alan")
    source.add(contact_id(4), user_id=USER_B, first_name="Other")
    await seed(store, contact_id(1), [1.0, 0.0, 0.0])
    await seed(store, contact_id(2), [0.8, 0.6, 0.0])
    await seed(store, contact_id(3), [0.0, 1.0, 0.0])
    await seed(store, contact_id(4), [1.0, 0.0, 0.0], user_id=USER_B)
    return store


@pytest.mark.parametrize("query", ["", None, 42, ["engineers"]])
async def test_invalid_query_is_rejected_before_embedding(
    search_embedder: StubEmbedder, store: FakeEmbeddingStore, query: object
):
    with pytest.raises(InvalidRequestError, match="Query is required"):
        await SemanticSearch(search_embedder, store).search(USER_A, query)

    assert search_embedder.calls == []


async def test_matches_are_ranked_and_thresholded(
    search_embedder: StubEmbedder, seeded_store: FakeEmbeddingStore
):
    result = await SemanticSearch(search_embedder, seeded_store).search(
        USER_A, QUERY, similarity_threshold=0.7
    )

    assert result.query == QUERY
    assert [m.contact_id for m in result.matches] == [contact_id(1), contact_id(2)]
    assert result.count == 2
    assert result.matches[0].similarity == pytest.approx(1.0)
    assert result.matches[1].similarity == pytest.approx(0.8)
    assert result.matches[0].first_name == "Ada"
    assert result.matches[0].company == "Engines"
    assert search_embedder.calls == [QUERY]


async def test_limit(search_embedder: StubEmbedder, seeded_store: FakeEmbeddingStore):
    result = await SemanticSearch(search_embedder, seeded_store).search(
        USER_A, QUERY, limit=1, similarity_threshold=0.0
    )

    assert [m.contact_id for m in result.matches] == [contact_id(1)]


async def test_results_are_scoped_to_the_user(
    search_embedder: StubEmbedder, seeded_store: FakeEmbeddingStore
):
    result = await SemanticSearch(search_embedder, seeded_store).search(
        USER_B, QUERY, similarity_threshold=0.0
    )

    assert [m.contact_id for m in result.matches] == [contact_id(4)]


async def test_soft_deleted_contacts_are_excluded(
    search_embedder: StubEmbedder,
    source: FakeContactSource,
    seeded_store: FakeEmbeddingStore,
):
    source.delete(contact_id(1))

    result = await SemanticSearch(search_embedder, seeded_store).search(USER_A, QUERY)

    assert [m.contact_id for m in result.matches] == [contact_id(2)]


async def test_no_match_is_a_valid_result(
    search_embedder: StubEmbedder, seeded_store: FakeEmbeddingStore
):
    result = await SemanticSearch(search_embedder, seeded_store).search(
        USER_A, QUERY, similarity_threshold=1.0 + 1e-9
    )

    assert result.matches == []
    assert result.count == 0


async def test_equal_similarity_is_ordered_by_contact_id(
    search_embedder: StubEmbedder,
    source: FakeContactSource,
    store: FakeEmbeddingStore,
):
    for n in (7, 5, 6):
        source.add(contact_id(n), first_name=f"Contact{n}")
        await seed(store, contact_id(n), [1.0, 0.0, 0.0])

    result = await SemanticSearch(search_embedder, store).search(USER_A, QUERY)

    assert [m.contact_id for m in result.matches] == [
        contact_id(5),
        contact_id(6),
        contact_id(7),
    ]


async def test_provider_failure_propagates(seeded_store: FakeEmbeddingStore):
    embedder = StubEmbedder(dimensions=3, fail_on={"London"})

    with pytest.raises(EmbeddingProviderError, match="Too Many Requests"):
        await SemanticSearch(embedder, seeded_store).search(USER_A, QUERY)


async def test_best_match_below_threshold_is_empty(
    source: FakeContactSource, store: FakeEmbeddingStore
):
    source.add(contact_id(1), first_name="Ada")
    await seed(store, contact_id(1), [1.0, 0.0, 0.0])
    embedder = StubEmbedder(dimensions=3, vectors={QUERY: [0.5, 0.8660254, 0.0]})

    result = await SemanticSearch(embedder, store).search(
        USER_A, QUERY, similarity_threshold=0.7
    )

    assert result.matches == []
    assert result.count == 0
