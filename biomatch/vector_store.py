"""
FAISS Vector Store Ranker

Alternative to the NumPy scan in ``biomatch.similarity`` that keeps one
``IndexFlatL2`` per modality for the snapshot being queried. It honours the
same ordering contract: ascending combined distance, ties in snapshot order.

Indexes are built lazily on the first query against a snapshot and reused
until a different snapshot is queried.

Note: FAISS works in float32, so distances can differ from the NumPy ranker
in the last few decimal places.
"""
import logging
import threading
from typing import Dict, List, Mapping, Optional, Tuple, Union

import faiss
import numpy as np

from biomatch.descriptor_index import Snapshot
from biomatch.features import Modality, ModalityKey, as_query
from biomatch.similarity import ModalityWeights, QueryFeatures, SimilarityResult, build_results

logger = logging.getLogger(__name__)


class FaissSimilarityEngine:
    """
    FAISS-backed exhaustive ranker.

    Thread-safe: the per-snapshot index cache is guarded by a lock that is
    never held across I/O.
    """

    def __init__(self, weights: Optional[Union[ModalityWeights, Mapping[ModalityKey, float]]] = None):
        if weights is None:
            weights = ModalityWeights()
        elif not isinstance(weights, ModalityWeights):
            weights = ModalityWeights(weights)
        self.weights = weights
        self._lock = threading.Lock()
        self._snapshot: Optional[Snapshot] = None
        self._indexes: Dict[Modality, Tuple[faiss.IndexFlatL2, np.ndarray]] = {}

    def _indexes_for(self, snapshot: Snapshot) -> Dict[Modality, Tuple[faiss.IndexFlatL2, np.ndarray]]:
        """Get (or build) the per-modality indexes for a snapshot."""
        with self._lock:
            if self._snapshot is snapshot:
                return self._indexes

            indexes = {}
            for modality in Modality:
                rows = np.flatnonzero(snapshot.mask(modality))
                if rows.size == 0:
                    continue
                vectors = np.ascontiguousarray(snapshot.matrix(modality)[rows], dtype=np.float32)
                index = faiss.IndexFlatL2(vectors.shape[1])
                index.add(vectors)
                indexes[modality] = (index, rows)

            self._snapshot = snapshot
            self._indexes = indexes
            logger.debug(f"Built FAISS indexes for snapshot #{snapshot.sequence}")
            return indexes

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

        query = as_query(query)
        indexes = self._indexes_for(snapshot)
        total = snapshot.bundle_count
        combined = np.zeros(total, dtype=np.float64)
        per_modality = {}

        for modality, vector in query.vectors.items():
            if modality not in indexes:
                continue
            index, rows = indexes[modality]
            q = np.ascontiguousarray(vector.values.reshape(1, -1), dtype=np.float32)
            squared, ids = index.search(q, int(index.ntotal))

            distances = np.zeros(total, dtype=np.float64)
            distances[rows[ids[0]]] = np.sqrt(np.maximum(squared[0].astype(np.float64), 0.0))
            present = snapshot.mask(modality)

            combined += np.where(present, self.weights[modality] * distances, 0.0)
            per_modality[modality] = (distances, present)

        return build_results(snapshot, combined, per_modality, n)
