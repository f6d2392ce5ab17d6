"""
Recognition service for subject identification in submitted photos.

Combines feature extraction, ranking against the current snapshot and the
match decision. Each query reads the current snapshot exactly once and uses
it for the whole request.
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Iterator, List, Optional

from biomatch.config import RECOGNITION_THRESHOLD, TOP_K_MATCHES
from biomatch.decision import MatchOutcome, decide
from biomatch.descriptor_index import DescriptorIndex, Snapshot
from biomatch.exceptions import NoSubjectDetectedError
from biomatch.features import FeatureBundle
from biomatch.interfaces import FeatureExtractor
from biomatch.similarity import Ranker, SimilarityEngine, SimilarityResult
from biomatch.sync import SyncEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankedCandidates:
    """Ordered top-N results plus the snapshot they were ranked against."""
    results: List[SimilarityResult]
    snapshot_sequence: int

    def __iter__(self) -> Iterator[SimilarityResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, position: int) -> SimilarityResult:
        return self.results[position]


class RecognitionService:
    """
    Query side of the service.

    Attributes:
        index: Descriptor index to read snapshots from
        extractor: Feature extractor for query photos
        ranker: Similarity ranker (NumPy scan by default)
        sync_engine: Optional; used to build the first snapshot on demand
        threshold: Default acceptance threshold for recognize()
    """

    def __init__(
        self,
        index: DescriptorIndex,
        extractor: FeatureExtractor,
        ranker: Optional[Ranker] = None,
        sync_engine: Optional[SyncEngine] = None,
        threshold: float = RECOGNITION_THRESHOLD
    ):
        self.index = index
        self.extractor = extractor
        self.ranker = ranker if ranker is not None else SimilarityEngine()
        self.sync_engine = sync_engine
        self.threshold = threshold

    async def _snapshot(self) -> Snapshot:
        if self.sync_engine is not None:
            await self.sync_engine.ensure_ready()
        return self.index.current()

    async def _query_features(self, image_bytes: bytes) -> FeatureBundle:
        """
        Raises:
            NoSubjectDetectedError: If the photo contains no subject
            ImageDecodeError: If the photo cannot be decoded
        """
        features = await asyncio.to_thread(self.extractor.extract, image_bytes)
        if features is None:
            raise NoSubjectDetectedError("No subject detected in the submitted image")
        return features

    async def recognize(self, image_bytes: bytes, threshold: Optional[float] = None) -> MatchOutcome:
        """Best match for a photo, or an "unknown" outcome."""
        snapshot = await self._snapshot()
        query = await self._query_features(image_bytes)

        ranked = await asyncio.to_thread(self.ranker.rank, query, snapshot, 1)
        outcome = decide(ranked[0] if ranked else None, self.threshold if threshold is None else threshold)
        outcome = replace(outcome, snapshot_sequence=snapshot.sequence)

        if outcome.recognized:
            logger.info(
                f"Recognized subject {outcome.best.label.subject_id} "
                f"(distance {outcome.best.distance:.4f}) against snapshot #{snapshot.sequence}"
            )
        else:
            logger.info(f"No match (best distance: {outcome.distance}) against snapshot #{snapshot.sequence}")
        return outcome

    async def recognize_similar(self, image_bytes: bytes, n: int = TOP_K_MATCHES) -> RankedCandidates:
        """Top ``n`` candidates for a photo, closest first."""
        if n < 1:
            raise ValueError(f"n must be >= 1, got {n}")
        snapshot = await self._snapshot()
        query = await self._query_features(image_bytes)
        results = await asyncio.to_thread(self.ranker.rank, query, snapshot, n)
        return RankedCandidates(results=results, snapshot_sequence=snapshot.sequence)
