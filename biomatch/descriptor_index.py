"""
Descriptor Index

Holds the current snapshot of enrolled feature sets. A snapshot is built
wholesale by the sync engine and never mutated afterwards; publishing swaps
the reference that queries read. Queries take the reference once and keep
using that snapshot even if a newer one is published mid-query.
"""
import logging
import threading
import time
from typing import Dict, Iterable, Iterator, Optional, Tuple

import numpy as np

from biomatch.features import LabeledFeatureSet, Modality, dimension_for

logger = logging.getLogger(__name__)


class Snapshot:
    """
    Immutable, fully built version of the index.

    Besides the ordered feature sets, a snapshot keeps one stacked matrix per
    modality covering every bundle in iteration order, with a boolean mask
    marking which rows actually carry that modality. Rows follow
    ``positions``: (feature set index, bundle index within the set).
    """

    def __init__(
        self,
        entries: Iterable[LabeledFeatureSet] = (),
        sequence: int = 0,
        built_at: Optional[float] = None
    ):
        self._entries: Tuple[LabeledFeatureSet, ...] = tuple(entries)
        self._sequence = sequence
        self._built_at = built_at if built_at is not None else time.time()

        positions = []
        for entry_idx, entry in enumerate(self._entries):
            for bundle_idx in range(len(entry.bundles)):
                positions.append((entry_idx, bundle_idx))
        self._positions: Tuple[Tuple[int, int], ...] = tuple(positions)

        total = len(positions)
        self._matrices: Dict[Modality, np.ndarray] = {}
        self._masks: Dict[Modality, np.ndarray] = {}
        for modality in Modality:
            matrix = np.zeros((total, dimension_for(modality)), dtype=np.float64)
            mask = np.zeros(total, dtype=bool)
            for row, (entry_idx, bundle_idx) in enumerate(positions):
                vector = self._entries[entry_idx].bundles[bundle_idx].get(modality)
                if vector is not None:
                    matrix[row] = vector.values
                    mask[row] = True
            matrix.setflags(write=False)
            mask.setflags(write=False)
            self._matrices[modality] = matrix
            self._masks[modality] = mask

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls((), sequence=0)

    @property
    def entries(self) -> Tuple[LabeledFeatureSet, ...]:
        return self._entries

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def built_at(self) -> float:
        return self._built_at

    @property
    def positions(self) -> Tuple[Tuple[int, int], ...]:
        return self._positions

    @property
    def bundle_count(self) -> int:
        return len(self._positions)

    def matrix(self, modality: Modality) -> np.ndarray:
        return self._matrices[modality]

    def mask(self, modality: Modality) -> np.ndarray:
        return self._masks[modality]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LabeledFeatureSet]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return (
            f"Snapshot(sequence={self._sequence}, subjects={len(self._entries)}, "
            f"bundles={self.bundle_count})"
        )


class DescriptorIndex:
    """
    Owner of the "current snapshot" reference.

    ``current()`` never blocks: it returns whatever reference is installed.
    ``publish()`` takes a short lock only to compare sequence numbers so a
    snapshot from an older rebuild can never replace a newer one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._current = Snapshot.empty()
        self._published = False

    def current(self) -> Snapshot:
        """Return the latest published snapshot."""
        return self._current

    def has_published(self) -> bool:
        """Whether any rebuild has been published yet."""
        return self._published

    def publish(self, snapshot: Snapshot) -> bool:
        """
        Atomically install a new snapshot.

        Returns:
            True if installed, False if it was older than the current one
        """
        with self._lock:
            current = self._current
            if snapshot.sequence < current.sequence:
                accepted = False
            else:
                self._current = snapshot
                self._published = True
                accepted = True

        if accepted:
            logger.info(
                f"Published snapshot #{snapshot.sequence} with {len(snapshot)} subjects "
                f"({snapshot.bundle_count} bundles)"
            )
        else:
            logger.warning(
                f"Discarded stale snapshot #{snapshot.sequence}; "
                f"snapshot #{current.sequence} is already published"
            )
        return accepted

    @property
    def count(self) -> int:
        """Number of subjects in the current snapshot."""
        return len(self._current)
