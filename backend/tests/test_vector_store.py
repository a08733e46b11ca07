import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from datetime import datetime, timezone

import pytest

from knowledge_engine.retrieval.errors import ProviderUnavailableError
from knowledge_engine.services.vector_store import ChromaSimilarityProvider

from fakes import FakeChromaClient, make_document


@pytest.fixture
def client():
    return FakeChromaClient()


@pytest.fixture
def provider(client):
    updated = datetime(2026, 2, 1, tzinfo=timezone.utc)
    store = ChromaSimilarityProvider(client, collection_name="kb-test")
    store.upsert(
        "t1",
        [
            make_document("precios", "Precios", "La consulta cuesta 500 pesos", category="pricing", updated_at=updated),
            make_document("horario", "Horario", "Abrimos a las 9"),
        ],
        [[0.1, 0.2], [0.3, 0.4]],
    )
    store.upsert("t2", [make_document("precios", "Precios", "Otro negocio")], [[0.1, 0.2]])
    return store


def test_collection_uses_cosine_space(client, provider):
    assert client.created_with == ("kb-test", {"hnsw:space": "cosine"})


def test_vector_ids_are_tenant_scoped(client, provider):
    assert set(client.collection.records) == {"t1:faq:precios", "t1:faq:horario", "t2:faq:precios"}


def test_query_maps_distance_to_similarity(client, provider):
    client.collection.distances = {"t1:faq:precios": 0.1, "t1:faq:horario": 0.45, "t2:faq:precios": 0.0}
    hits = provider.query_similar("t1", [0.1, 0.2], limit=5, min_similarity=0.5)

    assert [h.id for h in hits] == ["faq:precios", "faq:horario"]
    assert hits[0].similarity == pytest.approx(0.9)
    assert hits[0].document.category == "pricing"
    assert hits[0].document.updated_at == datetime(2026, 2, 1, tzinfo=timezone.utc)
    assert client.collection.last_query["where"] == {"tenant_id": {"$eq": "t1"}}


def test_min_similarity_filters(client, provider):
    client.collection.distances = {"t1:faq:precios": 0.1, "t1:faq:horario": 0.8}
    hits = provider.query_similar("t1", [0.1, 0.2], limit=5, min_similarity=0.5)
    assert [h.id for h in hits] == ["faq:precios"]


def test_similarity_clamped(client, provider):
    client.collection.distances = {"t1:faq:precios": -0.2, "t1:faq:horario": 1.7}
    hits = provider.query_similar("t1", [0.1, 0.2], limit=5, min_similarity=0.0)
    assert [h.similarity for h in hits] == [1.0, 0.0]


def test_query_failure_is_provider_unavailable(client, provider):
    client.collection.fail = True
    with pytest.raises(ProviderUnavailableError):
        provider.query_similar("t1", [0.1, 0.2], limit=5, min_similarity=0.0)


def test_delete_tenant(client, provider):
    provider.delete_tenant("t1")
    assert set(client.collection.records) == {"t2:faq:precios"}


def test_upsert_length_mismatch(provider):
    with pytest.raises(ValueError):
        provider.upsert("t1", [make_document("a", "a", "a")], [])


def test_document_keys_per_tenant(provider):
    assert provider.document_keys("t1") == {"faq:precios", "faq:horario"}
    assert provider.document_keys("t3") == set()


def test_delete_documents(client, provider):
    assert provider.delete_documents("t1", ["faq:horario"]) == 1
    assert provider.delete_documents("t1", []) == 0
    assert set(client.collection.records) == {"t1:faq:precios", "t2:faq:precios"}
