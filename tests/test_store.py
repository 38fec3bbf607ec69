from __future__ import annotations

import types
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

pytest.importorskip("pyarrow")

from landface.errors import DuplicateEmbedding, EmbeddingNotFound, InvalidEmbedding, StoreUnavailable
from landface.store.base import retention_deadline
from landface.store.memory import InMemoryEmbeddingStore
from landface.store.parquet import ParquetEmbeddingStore
from landface.types import embedding_hash

DIM = 128


def _vec(seed: int) -> np.ndarray:
    return np.random.default_rng(seed).normal(size=DIM).astype(np.float32)


@pytest.fixture(params=["memory", "parquet"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryEmbeddingStore(embedding_dim=DIM)
    return ParquetEmbeddingStore(tmp_path / "store" / "embeddings.parquet", embedding_dim=DIM)


def test_put_normalizes_and_hashes(store):
    embedding_id = store.put("OWNER-1", _vec(1) * 5.0, {"quality_score": 0.8, "consent_given": True})
    record = store.get(embedding_id)
    assert record.owner_id == "OWNER-1"
    assert np.isclose(np.linalg.norm(record.embedding), 1.0, atol=1e-4)
    assert record.embedding_hash == embedding_hash(record.embedding)
    assert record.quality_score == pytest.approx(0.8)
    assert record.consent_given is True
    assert record.created_at.tzinfo is not None


def test_default_retention_is_seven_years(store):
    embedding_id = store.put("OWNER-1", _vec(1))
    record = store.get(embedding_id)
    assert record.retention_expires.year == record.created_at.year + 7


@pytest.mark.parametrize("bad", ["[0.1, 0.2, 0.3]", [[0.1] * DIM], [0.1] * (DIM + 1), [float("nan")] * DIM])
def test_put_rejects_non_canonical_embeddings(store, bad):
    with pytest.raises(InvalidEmbedding):
        store.put("OWNER-1", bad)
    assert store.list_all() == []


def test_put_requires_owner(store):
    with pytest.raises(ValueError):
        store.put("", _vec(1))


def test_duplicate_embedding_for_same_owner_rejected(store):
    vec = _vec(2)
    store.put("OWNER-1", vec)
    with pytest.raises(DuplicateEmbedding):
        store.put("OWNER-1", vec.copy())
    store.put("OWNER-2", vec)
    assert len(store.list_all()) == 2


def test_get_by_owner_prefers_best_consented_record(store):
    store.put("OWNER-1", _vec(1), {"quality_score": 0.9, "consent_given": False})
    low = store.put("OWNER-1", _vec(2), {"quality_score": 0.6, "consent_given": True})
    high = store.put("OWNER-1", _vec(3), {"quality_score": 0.8, "consent_given": True})
    assert store.get_by_owner("OWNER-1").embedding_id == high
    store.delete(high)
    assert store.get_by_owner("OWNER-1").embedding_id == low
    with pytest.raises(EmbeddingNotFound):
        store.get_by_owner("OWNER-404")


def test_list_with_consent_is_lazy_and_filters(store):
    now = datetime.now(timezone.utc)
    keep = store.put("A", _vec(1), {"consent_given": True})
    store.put("B", _vec(2), {"consent_given": False})
    store.put("C", _vec(3), {"consent_given": True, "retention_expires": now - timedelta(days=1)})

    listing = store.list_with_consent()
    assert isinstance(listing, types.GeneratorType)
    assert [r.embedding_id for r in listing] == [keep]
    # restartable per call
    assert [r.embedding_id for r in store.list_with_consent()] == [keep]


def test_update_only_touches_metadata(store):
    embedding_id = store.put("A", _vec(1), {"quality_score": 0.5})
    before = store.get(embedding_id)
    updated = store.update(
        embedding_id,
        {"consent_given": True, "quality_score": 0.9, "owner_id": "HIJACK", "embedding": [0.0] * DIM},
    )
    assert updated.consent_given is True
    assert updated.quality_score == pytest.approx(0.9)
    assert updated.owner_id == "A"
    assert np.array_equal(store.get(embedding_id).embedding, before.embedding)

    with pytest.raises(EmbeddingNotFound):
        store.update("missing", {"consent_given": True})


def test_delete_is_erasure(store):
    embedding_id = store.put("A", _vec(1))
    store.delete(embedding_id)
    with pytest.raises(EmbeddingNotFound):
        store.get(embedding_id)
    with pytest.raises(EmbeddingNotFound):
        store.delete(embedding_id)


def test_purge_expired(store):
    now = datetime.now(timezone.utc)
    store.put("A", _vec(1), {"retention_expires": now - timedelta(seconds=1)})
    store.put("B", _vec(2), {"retention_expires": now - timedelta(days=30)})
    alive = store.put("C", _vec(3))
    assert store.purge_expired(now) == 2
    assert [r.embedding_id for r in store.list_all()] == [alive]
    assert store.purge_expired(now) == 0


def test_not_found_error_is_a_key_error(store):
    with pytest.raises(KeyError):
        store.get("nope")


def test_parquet_store_reads_fresh_on_every_call(tmp_path):
    path = tmp_path / "embeddings.parquet"
    writer = ParquetEmbeddingStore(path, embedding_dim=DIM)
    reader = ParquetEmbeddingStore(path, embedding_dim=DIM)
    assert reader.list_all() == []

    embedding_id = writer.put("A", _vec(1), {"consent_given": True, "owner_name": "Asha Rao"})
    records = reader.list_all()
    assert [r.embedding_id for r in records] == [embedding_id]
    assert records[0].owner_name == "Asha Rao"
    assert records[0].embedding.dtype == np.float32
    assert records[0].embedding_hash == embedding_hash(records[0].embedding)

    writer.delete(embedding_id)
    assert reader.list_all() == []


def test_parquet_store_corrupt_file_is_unavailable(tmp_path):
    path = tmp_path / "embeddings.parquet"
    path.write_bytes(b"definitely not parquet")
    store = ParquetEmbeddingStore(path, embedding_dim=DIM)
    with pytest.raises(StoreUnavailable):
        store.list_all()
    with pytest.raises(StoreUnavailable):
        list(store.list_with_consent())


def test_retention_deadline_leap_day():
    leap = datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
    assert retention_deadline(leap, 7) == datetime(2031, 2, 28, 12, 0, tzinfo=timezone.utc)
    assert retention_deadline(datetime(2025, 5, 1, tzinfo=timezone.utc), 7).year == 2032


def test_timestamps_are_stored_as_utc(store):
    embedding_id = store.put(
        "OWNER-1", _vec(1), {"consent_given": True, "created_at": "2024-01-01T00:00:00+00:00"}
    )
    record = store.get(embedding_id)
    assert record.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert record.retention_expires == datetime(2031, 1, 1, tzinfo=timezone.utc)

    store.update(embedding_id, {"retention_expires": datetime(2040, 1, 1)})
    updated = store.get(embedding_id)
    assert updated.retention_expires.tzinfo is not None
    assert updated.retention_expires == datetime(2040, 1, 1, tzinfo=timezone.utc)
    assert [r.embedding_id for r in store.list_with_consent()] == [embedding_id]
    assert store.purge_expired(datetime(2041, 1, 1, tzinfo=timezone.utc)) == 1


def test_unparseable_timestamp_rejected(store):
    with pytest.raises(ValueError):
        store.put("OWNER-1", _vec(1), {"created_at": "not-a-date"})
    assert store.list_all() == []


def test_parquet_store_dimension_mismatch_is_unavailable(tmp_path):
    path = tmp_path / "embeddings.parquet"
    ParquetEmbeddingStore(path, embedding_dim=DIM).put("OWNER-1", _vec(1), {"consent_given": True})
    wider = ParquetEmbeddingStore(path, embedding_dim=512)
    with pytest.raises(StoreUnavailable):
        wider.list_all()
    with pytest.raises(StoreUnavailable):
        list(wider.list_with_consent())
