"""Unit tests for distances and ranking."""

from __future__ import annotations

import numpy as np
import pytest

from biomatch.descriptor_index import Snapshot
from biomatch.features import FeatureBundle, FeatureVector, Modality, dimension_for
from biomatch.similarity import ModalityWeights, SimilarityEngine, euclidean_distance
from biomatch.vector_store import FaissSimilarityEngine
from conftest import bundle, make_snapshot, subject, vector


def random_bundle(rng: np.random.Generator, image_ref=None) -> FeatureBundle:
    return FeatureBundle.from_arrays(
        {m: rng.normal(size=dimension_for(m)) for m in Modality},
        image_ref=image_ref
    )


@pytest.fixture
def engine():
    return SimilarityEngine()


@pytest.fixture
def random_snapshot():
    rng = np.random.default_rng(7)
    entries = [
        subject(f"s{i}", *[random_bundle(rng) for _ in range(1 + i % 3)])
        for i in range(12)
    ]
    return Snapshot(entries, sequence=1)


def test_distance_identity_and_symmetry():
    """Test distance(a, a) == 0 and distance(a, b) == distance(b, a)."""
    rng = np.random.default_rng(0)
    for _ in range(50):
        a = FeatureVector(Modality.FACE, rng.normal(size=128))
        b = FeatureVector(Modality.FACE, rng.normal(size=128))

        assert euclidean_distance(a, a) == 0.0
        assert euclidean_distance(a, b) == euclidean_distance(b, a)
        assert euclidean_distance(a, b) > 0.0


def test_distance_known_value():
    """Test a 3-4-5 triangle."""
    assert euclidean_distance(np.array([0.0, 0.0]), np.array([3.0, 4.0])) == pytest.approx(5.0)


def test_distance_shape_mismatch():
    """Test that vectors of different lengths cannot be compared."""
    with pytest.raises(ValueError):
        euclidean_distance(np.zeros(3), np.zeros(4))


def test_default_weights():
    """Test the default face/iris/ear weighting."""
    weights = ModalityWeights()
    assert weights.as_dict() == {"face": 0.6, "iris": 0.2, "ear": 0.2}


def test_negative_weight_rejected():
    """Test that weights must be non-negative."""
    with pytest.raises(ValueError, match="non-negative"):
        ModalityWeights({"face": -0.1})


def test_worked_example(engine):
    """Test 0.6*0.2 + 0.2*0.3 + 0.2*0.4 = 0.26."""
    snapshot = make_snapshot(subject("a", bundle(face=0.2, iris=0.3, ear=0.4)))
    query = bundle(face=0.0, iris=0.0, ear=0.0)

    results = engine.rank(query, snapshot, 1)

    assert len(results) == 1
    assert results[0].distance == pytest.approx(0.26)
    assert results[0].modality_distances == pytest.approx({"face": 0.2, "iris": 0.3, "ear": 0.4})
    assert results[0].label.subject_id == "a"
    assert results[0].bundle_index == 0
    assert results[0].rank == 1


def test_rank_empty_snapshot(engine):
    """Test that an empty snapshot ranks to an empty list."""
    assert engine.rank(bundle(), Snapshot.empty(), 5) == []


def test_rank_rejects_non_positive_n(engine):
    """Test that n must be at least 1."""
    with pytest.raises(ValueError):
        engine.rank(bundle(), make_snapshot(subject("a", bundle())), 0)


def test_rank_is_sorted_and_bounded(engine, random_snapshot):
    """Test that rank returns at most n results in non-decreasing distance."""
    rng = np.random.default_rng(1)
    query = random_bundle(rng)

    for n in (1, 3, 5, 10):
        results = engine.rank(query, random_snapshot, n)
        distances = [r.distance for r in results]
        assert len(results) == n
        assert distances == sorted(distances)
        assert [r.rank for r in results] == list(range(1, n + 1))


def test_rank_returns_all_bundles_when_n_is_large(engine, random_snapshot):
    """Test that n >= total bundles returns every bundle."""
    rng = np.random.default_rng(2)
    results = engine.rank(random_bundle(rng), random_snapshot, 1000)

    assert len(results) == random_snapshot.bundle_count
    seen = {(r.label.subject_id, r.bundle_index) for r in results}
    assert len(seen) == random_snapshot.bundle_count


def test_rank_ties_keep_snapshot_order(engine):
    """Test that equal distances are ordered as the snapshot iterates."""
    snapshot = make_snapshot(
        subject("first", bundle(face=1.0)),
        subject("second", bundle(face=1.0), bundle(face=1.0)),
        subject("third", bundle(face=1.0)),
    )

    results = engine.rank(bundle(face=0.0), snapshot, 4)

    assert [(r.label.subject_id, r.bundle_index) for r in results] == [
        ("first", 0), ("second", 0), ("second", 1), ("third", 0)
    ]


def test_rank_reports_bundle_index(engine):
    """Test that the matching image of a subject is identified."""
    snapshot = make_snapshot(subject("a", bundle(face=0.9), bundle(face=0.1), bundle(face=0.5)))

    best = engine.rank(bundle(face=0.0), snapshot, 1)[0]

    assert best.bundle_index == 1
    assert best.distance == pytest.approx(0.6 * 0.1)


def test_missing_modality_is_excluded_without_renormalization(engine):
    """Test that an absent modality contributes nothing and weights stay as given."""
    snapshot = make_snapshot(subject("face-only", bundle(face=0.5, iris=None, ear=None)))

    result = engine.rank(bundle(face=0.0, iris=0.0, ear=0.0), snapshot, 1)[0]

    # 0.6 * 0.5, not renormalized to 1.0 * 0.5
    assert result.distance == pytest.approx(0.3)
    assert result.modality_distances == pytest.approx({"face": 0.5})


def test_query_without_modality_skips_it(engine):
    """Test that a modality missing from the query is excluded."""
    snapshot = make_snapshot(subject("a", bundle(face=0.5, iris=1.0, ear=1.0)))

    result = engine.rank(bundle(face=0.0, iris=None, ear=None), snapshot, 1)[0]

    assert result.distance == pytest.approx(0.3)
    assert set(result.modality_distances) == {"face"}


def test_face_only_weights():
    """Test a deployment that only weighs the face modality."""
    engine = SimilarityEngine({"face": 1.0})
    snapshot = make_snapshot(subject("a", bundle(face=0.4, iris=5.0, ear=5.0)))

    result = engine.rank(bundle(), snapshot, 1)[0]

    assert result.distance == pytest.approx(0.4)
    # Zero-weight modalities are still reported
    assert result.modality_distances["iris"] == pytest.approx(5.0)


def test_rank_accepts_raw_mapping(engine):
    """Test that a plain modality -> values mapping works as a query."""
    snapshot = make_snapshot(subject("a", bundle(face=0.5, iris=None, ear=None)))

    results = engine.rank({"face": vector(Modality.FACE)}, snapshot, 1)

    assert results[0].distance == pytest.approx(0.3)


def test_faiss_ranker_matches_numpy(engine, random_snapshot):
    """Test that the FAISS ranker produces the same ranking as the scan."""
    faiss_engine = FaissSimilarityEngine()
    rng = np.random.default_rng(3)

    for _ in range(5):
        query = random_bundle(rng)
        expected = engine.rank(query, random_snapshot, 8)
        actual = faiss_engine.rank(query, random_snapshot, 8)

        assert [(r.label.subject_id, r.bundle_index) for r in actual] == \
            [(r.label.subject_id, r.bundle_index) for r in expected]
        for a, e in zip(actual, expected):
            assert a.distance == pytest.approx(e.distance, rel=1e-4)


def test_faiss_ranker_handles_missing_modalities():
    """Test FAISS ranking when some subjects lack a modality."""
    faiss_engine = FaissSimilarityEngine()
    snapshot = make_snapshot(
        subject("face-only", bundle(face=0.5, iris=None, ear=None)),
        subject("full", bundle(face=0.2, iris=0.3, ear=0.4)),
    )

    results = faiss_engine.rank(bundle(), snapshot, 2)

    assert [r.label.subject_id for r in results] == ["full", "face-only"]
    assert results[0].distance == pytest.approx(0.26, rel=1e-4)
    assert results[1].distance == pytest.approx(0.3, rel=1e-4)
    assert set(results[1].modality_distances) == {"face"}


def test_faiss_ranker_empty_snapshot():
    """Test that the FAISS ranker returns nothing for an empty snapshot."""
    assert FaissSimilarityEngine().rank(bundle(), Snapshot.empty(), 3) == []


def test_faiss_ranker_rebuilds_for_new_snapshot():
    """Test that indexes follow the snapshot being queried."""
    faiss_engine = FaissSimilarityEngine()
    first = make_snapshot(subject("a", bundle(face=0.1)), sequence=1)
    second = make_snapshot(subject("b", bundle(face=0.1)), sequence=2)

    assert faiss_engine.rank(bundle(), first, 1)[0].label.subject_id == "a"
    assert faiss_engine.rank(bundle(), second, 1)[0].label.subject_id == "b"
    assert faiss_engine.rank(bundle(), first, 1)[0].label.subject_id == "a"


@pytest.mark.parametrize("ranker", [SimilarityEngine(), FaissSimilarityEngine()], ids=["numpy", "faiss"])
def test_bundle_sharing_no_modality_ranks_last(ranker):
    """Test that a bundle with nothing to compare cannot outrank a real comparison."""
    snapshot = make_snapshot(
        subject("iris-only", bundle(face=None, ear=None)),
        subject("face-only", bundle(face=0.5, iris=None, ear=None)),
    )

    results = ranker.rank(bundle(face=0.0, iris=None, ear=None), snapshot, 2)

    assert [r.label.subject_id for r in results] == ["face-only", "iris-only"]
    assert results[1].distance == 0.0
    assert results[1].modality_distances == {}
