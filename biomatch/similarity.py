"""
Similarity Engine

Ranks every enrolled bundle of a snapshot against a query feature set by a
weighted sum of per-modality Euclidean distances.

Weighting policy: a modality contributes only when both the query and the
bundle carry it. Missing modalities are dropped from the sum and the
remaining weights are used as configured, without renormalization, so a
bundle lacking a modality can score a smaller combined distance than one
that has it. A bundle sharing no modality with the query scores 0.0 with
empty ``modality_distances``. It is ranked after every bundle that was
actually compared, and the match decision never accepts it.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from biomatch.config import MODALITY_WEIGHTS
from biomatch.descriptor_index import Snapshot
from biomatch.features import (
    FeatureBundle,
    FeatureVector,
    Modality,
    ModalityKey,
    SubjectLabel,
    as_query,
)

logger = logging.getLogger(__name__)

QueryFeatures = Union[FeatureBundle, Mapping[ModalityKey, Sequence[float]]]


def euclidean_distance(a: Union[FeatureVector, np.ndarray], b: Union[FeatureVector, np.ndarray]) -> float:
    """Square root of the sum of squared coordinate differences."""
    a_values = a.values if isinstance(a, FeatureVector) else np.asarray(a, dtype=np.float64)
    b_values = b.values if isinstance(b, FeatureVector) else np.asarray(b, dtype=np.float64)
    if a_values.shape != b_values.shape:
        raise ValueError(f"Cannot compare vectors of shape {a_values.shape} and {b_values.shape}")
    diff = a_values - b_values
    return float(np.sqrt(np.dot(diff, diff)))


@dataclass(frozen=True)
class ModalityWeights:
    """Non-negative weight per modality; unlisted modalities weigh 0."""
    weights: Mapping[Modality, float] = field(default_factory=lambda: dict(MODALITY_WEIGHTS))

    def __post_init__(self):
        normalized = {}
        for key, value in self.weights.items():
            modality = Modality(key)
            value = float(value)
            if value < 0 or not np.isfinite(value):
                raise ValueError(f"Weight for {modality.value} must be a non-negative number, got {value}")
            normalized[modality] = value
        object.__setattr__(self, "weights", normalized)

    def __getitem__(self, modality: ModalityKey) -> float:
        return self.weights.get(Modality(modality), 0.0)

    def as_dict(self) -> Dict[str, float]:
        return {m.value: w for m, w in self.weights.items()}


@dataclass(frozen=True)
class SimilarityResult:
    """One ranked bundle."""
    label: SubjectLabel
    distance: float
    modality_distances: Dict[str, float]
    bundle_index: int
    rank: int


class Ranker(Protocol):
    """Anything that can rank a snapshot against a query feature set."""

    def rank(self, query: QueryFeatures, snapshot: Snapshot, n: int) -> List[SimilarityResult]:
        ...


def build_results(
    snapshot: Snapshot,
    combined: np.ndarray,
    per_modality: Mapping[Modality, Tuple[np.ndarray, np.ndarray]],
    n: int
) -> List[SimilarityResult]:
    """
    Turn per-row distances into the top ``n`` results.

    Args:
        snapshot: Snapshot the distances were computed against
        combined: Combined distance per snapshot row
        per_modality: modality -> (distances, rows where the modality counted)
        n: Maximum number of results

    Returns:
        Results in ascending combined distance; equal distances keep
        snapshot iteration order. Rows sharing no modality with the query
        come after every compared row.
    """
    compared = np.zeros(len(combined), dtype=bool)
    for _, present in per_modality.values():
        compared |= present
    # Rows with nothing compared go last
    order = np.argsort(np.where(compared, combined, np.inf), kind="stable")[:n]

    results = []
    for rank, row in enumerate(order, start=1):
        entry_idx, bundle_idx = snapshot.positions[row]
        modality_distances = {
            modality.value: float(distances[row])
            for modality, (distances, present) in per_modality.items()
            if present[row]
        }
        results.append(SimilarityResult(
            label=snapshot.entries[entry_idx].label,
            distance=float(combined[row]),
            modality_distances=modality_distances,
            bundle_index=bundle_idx,
            rank=rank
        ))
    return results


class SimilarityEngine:
    """
    Exhaustive scan over every bundle in a snapshot.

    O(total bundles) per query, which is fine for directories in the
    hundreds to low thousands of subjects.
    """

    def __init__(self, weights: Optional[Union[ModalityWeights, Mapping[ModalityKey, float]]] = None):
        if weights is None:
            weights = ModalityWeights()
        elif not isinstance(weights, ModalityWeights):
            weights = ModalityWeights(weights)
        self.weights = weights

    def distances(
        self,
        query: QueryFeatures,
        snapshot: Snapshot
    ) -> Tuple[np.ndarray, Dict[Modality, Tuple[np.ndarray, np.ndarray]]]:
        """Combined and per-modality distances for every snapshot row."""
        query = as_query(query)
        total = snapshot.bundle_count
        combined = np.zeros(total, dtype=np.float64)
        per_modality = {}

        for modality, vector in query.vectors.items():
            present = snapshot.mask(modality)
            if not present.any():
                continue
            diff = snapshot.matrix(modality) - vector.values
            distances = np.sqrt(np.einsum("ij,ij->i", diff, diff))
            combined += np.where(present, self.weights[modality] * distances, 0.0)
            per_modality[modality] = (distances, present)

        return combined, per_modality

    def rank(self, query: QueryFeatures, snapshot: Snapshot, n: int) -> List[SimilarityResult]:
        """
        Return the ``n`` bundles closest to ``query``.

        Raises:
            ValueError: If n < 1
        """
        if n < 1:
            raise ValueError(f"n must be >= 1, got {n}")
        if snapshot.bundle_count == 0:
            return []

        combined, per_modality = self.distances(query, snapshot)
        return build_results(snapshot, combined, per_modality, n)
