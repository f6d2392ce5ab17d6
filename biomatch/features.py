"""
Feature data model held by the descriptor index.

A subject enrolled in the directory becomes one LabeledFeatureSet: its label
plus one FeatureBundle per enrollment image that yielded a subject. A bundle
holds one FeatureVector per modality extracted from that image.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from biomatch.config import MODALITY_DIMENSIONS
from biomatch.exceptions import InvalidFeatureVectorError


class Modality(str, Enum):
    """Biometric signal types contributing an independent descriptor."""
    FACE = "face"
    IRIS = "iris"
    EAR = "ear"


ModalityKey = Union[Modality, str]


def dimension_for(modality: ModalityKey) -> int:
    """Fixed vector length for a modality."""
    return MODALITY_DIMENSIONS[Modality(modality).value]


@dataclass(frozen=True, eq=False)
class FeatureVector:
    """
    Fixed-length descriptor for one modality.

    The values are stored as a read-only float64 array. Construction fails
    with InvalidFeatureVectorError when the length does not match the
    configured dimension for the modality.
    """
    modality: Modality
    values: np.ndarray

    def __post_init__(self):
        try:
            modality = Modality(self.modality)
        except ValueError:
            raise InvalidFeatureVectorError(f"Unknown modality: {self.modality!r}")

        try:
            values = np.array(self.values, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidFeatureVectorError(f"{modality.value} vector is not numeric: {e}")

        if values.ndim != 1:
            raise InvalidFeatureVectorError(
                f"{modality.value} vector must be 1-D, got shape {values.shape}"
            )

        expected = dimension_for(modality)
        if values.shape[0] != expected:
            raise InvalidFeatureVectorError(
                f"{modality.value} vector must have {expected} values, got {values.shape[0]}"
            )

        if not np.all(np.isfinite(values)):
            raise InvalidFeatureVectorError(f"{modality.value} vector contains non-finite values")

        values.setflags(write=False)
        object.__setattr__(self, "modality", modality)
        object.__setattr__(self, "values", values)

    def __len__(self) -> int:
        return int(self.values.shape[0])

    def __repr__(self) -> str:
        return f"FeatureVector(modality={self.modality.value}, dim={len(self)})"


@dataclass(frozen=True, eq=False)
class FeatureBundle:
    """Per-modality vectors extracted from a single image."""
    vectors: Mapping[Modality, FeatureVector]
    image_ref: Optional[str] = None

    def __post_init__(self):
        if not self.vectors:
            raise InvalidFeatureVectorError("A feature bundle needs at least one modality")

        vectors: Dict[Modality, FeatureVector] = {}
        for key, vector in self.vectors.items():
            modality = Modality(key)
            if vector.modality is not modality:
                raise InvalidFeatureVectorError(
                    f"Vector for {modality.value} is tagged {vector.modality.value}"
                )
            vectors[modality] = vector
        object.__setattr__(self, "vectors", vectors)

    @classmethod
    def from_arrays(
        cls,
        arrays: Mapping[ModalityKey, Sequence[float]],
        image_ref: Optional[str] = None
    ) -> "FeatureBundle":
        """Build a bundle from raw per-modality value sequences."""
        return cls(
            vectors={Modality(k): FeatureVector(Modality(k), v) for k, v in arrays.items()},
            image_ref=image_ref,
        )

    @property
    def modalities(self) -> frozenset:
        return frozenset(self.vectors)

    def get(self, modality: ModalityKey) -> Optional[FeatureVector]:
        return self.vectors.get(Modality(modality))

    def __repr__(self) -> str:
        names = ",".join(sorted(m.value for m in self.vectors))
        return f"FeatureBundle(modalities={names}, image_ref={self.image_ref!r})"


@dataclass(frozen=True)
class SubjectLabel:
    """Identity of an enrolled subject, carried opaquely through ranking."""
    subject_id: str
    display_name: str
    image_refs: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "image_refs", tuple(self.image_refs))

    def to_dict(self) -> dict:
        return {
            "uid": self.subject_id,
            "name": self.display_name,
            "image_refs": list(self.image_refs),
        }


@dataclass(frozen=True, eq=False)
class LabeledFeatureSet:
    """
    One enrolled subject: label plus all of their valid bundles.

    Every bundle must carry the same set of modalities, and a set without
    bundles is invalid; such subjects never enter the index.
    """
    label: SubjectLabel
    bundles: Tuple[FeatureBundle, ...]

    def __post_init__(self):
        bundles = tuple(self.bundles)
        if not bundles:
            raise InvalidFeatureVectorError(
                f"Subject {self.label.subject_id} has no feature bundles"
            )
        modalities = bundles[0].modalities
        for bundle in bundles[1:]:
            if bundle.modalities != modalities:
                raise InvalidFeatureVectorError(
                    f"Subject {self.label.subject_id} mixes bundles with different modalities"
                )
        object.__setattr__(self, "bundles", bundles)

    @property
    def modalities(self) -> frozenset:
        return self.bundles[0].modalities

    def __len__(self) -> int:
        return len(self.bundles)


def as_query(features: Union[FeatureBundle, Mapping[ModalityKey, Iterable[float]]]) -> FeatureBundle:
    """Accept either a bundle or a raw mapping as a query feature set."""
    if isinstance(features, FeatureBundle):
        return features
    return FeatureBundle.from_arrays(features)
