"""
Match decision: accept or reject the best ranked candidate.

Confidence is ``1 - distance`` clamped to [0, 1]. It only decreases as the
distance grows and is not a calibrated probability; the raw distance is
always returned next to it.
"""
from dataclasses import dataclass
from typing import Optional

from biomatch.config import RECOGNITION_THRESHOLD
from biomatch.similarity import SimilarityResult

UNKNOWN = "unknown"


@dataclass(frozen=True)
class MatchOutcome:
    """Result of a best-match decision."""
    recognized: bool
    best: Optional[SimilarityResult]
    confidence: Optional[float]
    snapshot_sequence: int = 0

    @property
    def label(self):
        """The matched SubjectLabel, or ``"unknown"``."""
        return self.best.label if self.recognized else UNKNOWN

    @property
    def distance(self) -> Optional[float]:
        return self.best.distance if self.best is not None else None


def confidence_from_distance(distance: float) -> float:
    return min(1.0, max(0.0, 1.0 - distance))


def decide(best: Optional[SimilarityResult], threshold: float = RECOGNITION_THRESHOLD) -> MatchOutcome:
    """
    Decide whether the top ranked candidate is a match.

    A distance equal to the threshold is rejected. A candidate that shares
    no modality with the query is never accepted.

    Args:
        best: Top result from the ranker, or None when nothing was ranked
        threshold: Distances strictly below this are accepted

    Returns:
        MatchOutcome; confidence is None when there was no candidate or
        nothing could be compared
    """
    if best is None:
        return MatchOutcome(recognized=False, best=None, confidence=None)

    if not best.modality_distances:
        # Nothing was compared, so the 0.0 combined distance carries no evidence
        return MatchOutcome(recognized=False, best=best, confidence=None)

    return MatchOutcome(
        recognized=best.distance < threshold,
        best=best,
        confidence=confidence_from_distance(best.distance)
    )
