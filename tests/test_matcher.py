import numpy as np
import pytest

from landface.recognition.matcher import SimilarityMatcher, cosine_similarity, owner_matches, top_similarities
from landface.types import EnrollmentRecord

DIM = 128


def _unit(index: int) -> np.ndarray:
    vec = np.zeros(DIM, dtype=np.float32)
    vec[index] = 1.0
    return vec


def _mix(base: np.ndarray, other: np.ndarray, cos: float) -> np.ndarray:
    return (cos * base + np.sqrt(1.0 - cos**2) * other).astype(np.float32)


def _record(owner_id: str, embedding: np.ndarray, name=None, embedding_id=None) -> EnrollmentRecord:
    return EnrollmentRecord(
        embedding_id=embedding_id or f"emb-{owner_id}",
        owner_id=owner_id,
        owner_name=name,
        embedding=embedding,
        consent_given=True,
    )


def test_cosine_similarity_identity_opposite_and_symmetry():
    rng = np.random.default_rng(7)
    v = rng.normal(size=DIM).astype(np.float32)
    w = rng.normal(size=DIM).astype(np.float32)
    assert cosine_similarity(v, v) == pytest.approx(1.0, abs=1e-6)
    assert cosine_similarity(v, -v) == pytest.approx(-1.0, abs=1e-6)
    assert cosine_similarity(v, w) == pytest.approx(cosine_similarity(w, v), abs=1e-12)


def test_cosine_similarity_zero_norm_is_zero():
    assert cosine_similarity(np.zeros(DIM), _unit(0)) == 0.0


def test_cosine_similarity_shape_mismatch():
    with pytest.raises(ValueError):
        cosine_similarity(np.ones(3), np.ones(4))


def test_verify_single_enrolled_record():
    e1 = _unit(0)
    candidates = [_record("R1", e1)]
    matcher = SimilarityMatcher()

    hit = matcher.verify(e1, candidates, threshold=0.5)
    assert hit.matched
    assert hit.status == "matched"
    assert hit.best.owner_id == "R1"
    assert np.isclose(hit.best.similarity, 1.0)
    assert hit.best.rank == 1

    miss = matcher.verify(_unit(5), candidates, threshold=0.5)
    assert not miss.matched
    assert miss.best is None
    assert miss.top_matches == []

    impossible = matcher.verify(e1, candidates, threshold=1.5)
    assert not impossible.matched


def test_verify_threshold_is_inclusive():
    query = _unit(0)
    candidate = _mix(query, _unit(1), 0.6)
    sim = cosine_similarity(query, candidate)
    result = SimilarityMatcher().verify(query, [_record("A", candidate)], threshold=sim)
    assert result.matched


def test_verify_no_match_returns_top5_diagnostics():
    query = _unit(0)
    cosines = [0.1, 0.3, 0.2, 0.05, 0.4, 0.15, 0.25]
    candidates = [_record(f"o{i}", _mix(query, _unit(i + 1), c)) for i, c in enumerate(cosines)]
    result = SimilarityMatcher().verify(query, candidates, threshold=0.8)
    assert not result.matched
    assert len(result.diagnostics) == 5
    sims = [m.similarity for m in result.diagnostics]
    assert sims == sorted(sims, reverse=True)
    assert result.diagnostics[0].owner_id == "o4"
    assert [m.rank for m in result.diagnostics] == [1, 2, 3, 4, 5]


def test_verify_top_matches_capped_at_three():
    query = _unit(0)
    candidates = [_record(f"o{i}", _mix(query, _unit(i + 1), 0.9 + 0.01 * i)) for i in range(5)]
    result = SimilarityMatcher().verify(query, candidates, threshold=0.5)
    assert result.matched
    assert len(result.top_matches) == 3
    assert result.best.owner_id == "o4"
    assert result.top_matches[0] is result.best


def test_verify_ties_keep_insertion_order():
    query = _unit(0)
    candidates = [_record("first", _unit(0)), _record("second", _unit(0))]
    result = SimilarityMatcher().verify(query, candidates, threshold=0.5)
    assert [m.owner_id for m in result.top_matches] == ["first", "second"]


def test_verify_owner_filter_applies_before_scoring():
    query = _unit(0)
    candidates = [
        _record("PLOT-001", _unit(0), name="Ramesh Kumar"),
        _record("PLOT-002", _mix(query, _unit(1), 0.7), name="Sita Devi"),
    ]
    matcher = SimilarityMatcher()

    by_name = matcher.verify(query, candidates, threshold=0.9, owner_filter="sita")
    assert not by_name.matched
    assert [m.owner_id for m in by_name.diagnostics] == ["PLOT-002"]

    by_id = matcher.verify(query, candidates, threshold=0.9, owner_filter="plot-001")
    assert by_id.matched and by_id.best.owner_id == "PLOT-001"

    by_predicate = matcher.verify(query, candidates, threshold=0.5, owner_filter=lambda r: r.owner_id.endswith("2"))
    assert by_predicate.best.owner_id == "PLOT-002"


def test_verify_empty_candidates():
    result = SimilarityMatcher().verify(_unit(0), [], threshold=0.5)
    assert not result.matched
    assert result.diagnostics == []


def test_owner_matches_blank_filter_matches_everything():
    record = _record("X", _unit(0))
    assert owner_matches(record, None)
    assert owner_matches(record, "   ")


def test_find_similar_near_duplicates():
    query = _unit(0)
    candidates = [
        _record("A", _mix(query, _unit(1), 0.95)),
        _record("B", _mix(query, _unit(2), 0.95)),
    ]
    matcher = SimilarityMatcher()

    at_090 = matcher.find_similar(query, candidates, threshold=0.9)
    assert {m.owner_id for m in at_090} == {"A", "B"}
    assert all(m.confidence == "high" for m in at_090)

    at_050 = matcher.find_similar(query, candidates, threshold=0.5)
    assert len(at_050) == 2

    assert matcher.find_similar(query, candidates, threshold=0.99) == []


def test_find_similar_medium_tier_and_exclusion():
    query = _unit(0)
    candidates = [
        _record("A", _mix(query, _unit(1), 0.8)),
        _record("B", _unit(0)),
    ]
    results = SimilarityMatcher().find_similar(query, candidates, threshold=0.5, exclude_owner_id="B")
    assert [m.owner_id for m in results] == ["A"]
    assert results[0].confidence == "medium"


def test_top_similarities_rounds():
    query = _unit(0)
    results = SimilarityMatcher().find_similar(query, [_record("A", _unit(0))], threshold=0.5)
    assert top_similarities(results) == [("A", 1.0)]
