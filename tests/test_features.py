"""Unit tests for the feature data model."""

from __future__ import annotations

import numpy as np
import pytest

from biomatch.exceptions import InvalidFeatureVectorError
from biomatch.features import (
    FeatureBundle,
    FeatureVector,
    LabeledFeatureSet,
    Modality,
    SubjectLabel,
    as_query,
    dimension_for,
)
from conftest import bundle, vector


def test_vector_accepts_configured_dimension():
    """Test that a vector of the configured length is accepted."""
    v = FeatureVector(Modality.FACE, np.ones(dimension_for(Modality.FACE)))

    assert len(v) == 128
    assert v.modality is Modality.FACE
    assert v.values.dtype == np.float64


def test_vector_accepts_string_modality():
    """Test that a plain modality name is coerced to the enum."""
    v = FeatureVector("iris", [0.1, 0.2, 0.3, 0.4])
    assert v.modality is Modality.IRIS


@pytest.mark.parametrize("modality, length", [
    (Modality.FACE, 127),
    (Modality.FACE, 129),
    (Modality.IRIS, 3),
    (Modality.EAR, 12),
])
def test_vector_rejects_wrong_dimension(modality, length):
    """Test that mismatched lengths are rejected at construction."""
    with pytest.raises(InvalidFeatureVectorError, match="must have"):
        FeatureVector(modality, np.zeros(length))


def test_vector_rejects_2d_values():
    """Test that a matrix is not accepted as a vector."""
    with pytest.raises(InvalidFeatureVectorError, match="1-D"):
        FeatureVector(Modality.IRIS, np.zeros((2, 2)))


def test_vector_rejects_non_finite_values():
    """Test that NaN and inf are rejected."""
    values = vector(Modality.IRIS)
    values[2] = np.nan
    with pytest.raises(InvalidFeatureVectorError, match="non-finite"):
        FeatureVector(Modality.IRIS, values)


def test_vector_rejects_unknown_modality():
    """Test that unknown modality names are rejected."""
    with pytest.raises(InvalidFeatureVectorError, match="Unknown modality"):
        FeatureVector("retina", [0.0] * 4)


def test_invalid_vector_is_a_value_error():
    """Test that callers catching ValueError also catch malformed vectors."""
    with pytest.raises(ValueError):
        FeatureVector(Modality.EAR, [1.0])


def test_vector_values_are_read_only():
    """Test that stored values cannot be mutated after construction."""
    source = vector(Modality.IRIS, 1.0)
    v = FeatureVector(Modality.IRIS, source)

    with pytest.raises(ValueError):
        v.values[0] = 5.0

    # The caller's array is copied, not frozen
    source[0] = 9.0
    assert v.values[0] == 1.0


def test_bundle_from_arrays():
    """Test building a bundle from raw arrays."""
    b = FeatureBundle.from_arrays(
        {"face": vector(Modality.FACE), "ear": vector(Modality.EAR)},
        image_ref="a.jpg"
    )

    assert b.modalities == frozenset({Modality.FACE, Modality.EAR})
    assert b.get("ear") is not None
    assert b.get(Modality.IRIS) is None
    assert b.image_ref == "a.jpg"


def test_bundle_requires_a_modality():
    """Test that an empty bundle is rejected."""
    with pytest.raises(InvalidFeatureVectorError):
        FeatureBundle(vectors={})


def test_bundle_rejects_mislabeled_vector():
    """Test that a vector filed under another modality is rejected."""
    iris = FeatureVector(Modality.IRIS, vector(Modality.IRIS))
    with pytest.raises(InvalidFeatureVectorError, match="tagged"):
        FeatureBundle(vectors={Modality.FACE: iris})


def test_labeled_set_requires_bundles():
    """Test that a subject with zero bundles is invalid."""
    label = SubjectLabel("s1", "Subject One")
    with pytest.raises(InvalidFeatureVectorError, match="no feature bundles"):
        LabeledFeatureSet(label=label, bundles=())


def test_labeled_set_requires_same_modalities():
    """Test that all bundles of a subject carry the same modalities."""
    label = SubjectLabel("s1", "Subject One")
    with pytest.raises(InvalidFeatureVectorError, match="different modalities"):
        LabeledFeatureSet(label=label, bundles=(bundle(), bundle(ear=None)))


def test_labeled_set_modalities():
    """Test the modality set of a valid subject."""
    label = SubjectLabel("s1", "Subject One", ["a.jpg", "b.jpg"])
    entry = LabeledFeatureSet(label=label, bundles=[bundle(iris=None), bundle(face=1.0, iris=None)])

    assert len(entry) == 2
    assert entry.modalities == frozenset({Modality.FACE, Modality.EAR})
    assert isinstance(entry.bundles, tuple)


def test_label_serializes_at_boundary():
    """Test that labels are structured values with a dict form for responses."""
    label = SubjectLabel("u-1", "Ana", ["x.jpg"])

    assert label.image_refs == ("x.jpg",)
    assert label.to_dict() == {"uid": "u-1", "name": "Ana", "image_refs": ["x.jpg"]}
    assert label == SubjectLabel("u-1", "Ana", ("x.jpg",))


def test_as_query_accepts_mapping_and_bundle():
    """Test query coercion."""
    b = bundle()
    assert as_query(b) is b

    q = as_query({"face": vector(Modality.FACE)})
    assert q.modalities == frozenset({Modality.FACE})
