"""
Sync Engine

Keeps the descriptor index eventually consistent with the enrollment
directory. A rebuild reads every enrollment record, extracts features from
each referenced image and publishes a brand new snapshot. Images in which no
subject can be found are pruned from the record, and the pruned reference
list is written back to the directory in the background: a slow or failing
write never holds up publishing, later rebuilds or queries.

Only one rebuild runs at a time. Change notifications that arrive while a
rebuild is running are coalesced into a single trailing rebuild.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence, Set, Tuple

from biomatch.descriptor_index import DescriptorIndex, Snapshot
from biomatch.exceptions import ImageDecodeError
from biomatch.features import FeatureBundle, LabeledFeatureSet, SubjectLabel
from biomatch.interfaces import BlobStore, EnrollmentDirectory, EnrollmentRecord, FeatureExtractor

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    """Counters exposed on the health endpoint."""
    rebuilds_completed: int = 0
    rebuilds_failed: int = 0
    images_pruned: int = 0
    write_back_failures: int = 0
    last_duration_ms: Optional[float] = None
    last_error: Optional[str] = None


def _harmonize(subject_id: str, bundles: List[FeatureBundle]) -> List[FeatureBundle]:
    """
    Restrict every bundle of a subject to the modalities they all share.

    When the bundles share no modality at all, only those matching the first
    bundle are kept. The other images stay in the directory (they did yield
    a subject) but are left out of this snapshot and of the label.
    """
    if not bundles:
        return bundles
    shared = frozenset.intersection(*(b.modalities for b in bundles))
    if all(b.modalities == shared for b in bundles):
        return bundles
    if not shared:
        first = bundles[0].modalities
        kept = []
        for bundle in bundles:
            if bundle.modalities == first:
                kept.append(bundle)
            else:
                logger.warning(
                    f"Image {bundle.image_ref} of subject {subject_id} shares no modality "
                    f"with {bundles[0].image_ref} and is left out of the index"
                )
        return kept
    return [
        FeatureBundle(vectors={m: b.vectors[m] for m in shared}, image_ref=b.image_ref)
        for b in bundles
    ]


class SyncEngine:
    """
    Builds and publishes snapshots from the enrollment directory.

    Usage:
        engine = SyncEngine(index, directory, blob_store, extractor)
        task = asyncio.create_task(engine.run(directory.changes()))
        ...
        await engine.close()
    """

    def __init__(
        self,
        index: DescriptorIndex,
        directory: EnrollmentDirectory,
        blob_store: BlobStore,
        extractor: FeatureExtractor
    ):
        self.index = index
        self.directory = directory
        self.blob_store = blob_store
        self.extractor = extractor
        self.stats = SyncStats()

        self._sequence = 0
        self._worker: Optional[asyncio.Task] = None
        self._pending = False
        self._closed = False
        self._write_backs: Set[asyncio.Task] = set()

    @property
    def is_rebuilding(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------
    async def rebuild(self) -> Snapshot:
        """
        Rebuild the index from the directory and publish it.

        Directory and blob storage failures propagate and nothing is
        published; the previous snapshot stays current.

        Returns:
            The snapshot that was built
        """
        self._sequence += 1
        sequence = self._sequence
        start_time = time.time()
        logger.info(f"Rebuild #{sequence} started")

        records = await self.directory.list_enrollments()

        entries = []
        for record in records:
            bundles, kept_refs = await self._extract_record(record)

            # Write-backs finish in the background; close() cancels stragglers
            if len(kept_refs) != len(record.image_refs):
                self._schedule_write_back(record, kept_refs)

            bundles = _harmonize(record.subject_id, bundles)
            if bundles:
                label = SubjectLabel(
                    subject_id=record.subject_id,
                    display_name=record.display_name,
                    image_refs=tuple(b.image_ref for b in bundles)
                )
                entries.append(LabeledFeatureSet(label=label, bundles=tuple(bundles)))
            else:
                logger.info(
                    f"Subject {record.subject_id} ('{record.display_name}') has no usable "
                    f"images and is left out of the index"
                )

        snapshot = Snapshot(entries, sequence=sequence)
        self.index.publish(snapshot)

        duration = (time.time() - start_time) * 1000
        self.stats.rebuilds_completed += 1
        self.stats.last_duration_ms = round(duration, 2)
        self.stats.last_error = None
        logger.info(
            f"Rebuild #{sequence} finished: {len(snapshot)} subjects, "
            f"{snapshot.bundle_count} bundles in {duration:.1f}ms"
        )
        return snapshot

    async def _extract_record(self, record: EnrollmentRecord) -> Tuple[List[FeatureBundle], Tuple[str, ...]]:
        """Extract one bundle per image; returns bundles and the surviving refs."""
        bundles = []
        kept_refs = []
        for ref in record.image_refs:
            image_bytes = await self.blob_store.fetch_image_bytes(ref)

            try:
                bundle = await asyncio.to_thread(self.extractor.extract, image_bytes)
            except ImageDecodeError as e:
                logger.warning(f"Could not decode image {ref}: {e}")
                bundle = None

            if bundle is None:
                self.stats.images_pruned += 1
                logger.info(
                    f"Removed image {ref} for subject {record.subject_id} "
                    f"('{record.display_name}'): no subject detected"
                )
                continue

            if bundle.image_ref != ref:
                bundle = FeatureBundle(vectors=bundle.vectors, image_ref=ref)
            bundles.append(bundle)
            kept_refs.append(ref)

        return bundles, tuple(kept_refs)

    # ------------------------------------------------------------------
    # Directory write-back
    # ------------------------------------------------------------------
    def _schedule_write_back(self, record: EnrollmentRecord, kept_refs: Sequence[str]) -> asyncio.Task:
        task = asyncio.create_task(self._write_back(record.subject_id, tuple(kept_refs)))
        self._write_backs.add(task)
        task.add_done_callback(self._write_backs.discard)
        return task

    async def _write_back(self, subject_id: str, image_refs: Tuple[str, ...]) -> bool:
        """Store a pruned reference list; failures are logged, never raised."""
        try:
            await self.directory.update_image_refs(subject_id, list(image_refs))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.write_back_failures += 1
            logger.error(f"Failed to write back image list for subject {subject_id}: {e}")
            return False
        logger.info(f"Updated image list for subject {subject_id} ({len(image_refs)} images)")
        return True

    @property
    def pending_write_backs(self) -> int:
        return len(self._write_backs)

    async def wait_for_write_backs(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the write-backs scheduled so far.

        Returns:
            True if all of them finished, False if the timeout expired first
        """
        tasks = list(self._write_backs)
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------
    def request_rebuild(self) -> asyncio.Task:
        """
        Ask for a rebuild.

        Starts one if none is running; otherwise marks exactly one follow-up
        rebuild to run after the current one.

        Returns:
            The worker task that will perform the rebuild
        """
        if self._closed:
            raise RuntimeError("Sync engine is closed")

        if self.is_rebuilding:
            self._pending = True
            logger.debug("Rebuild already running; follow-up scheduled")
            return self._worker

        self._pending = False
        self._worker = asyncio.create_task(self._run_rebuilds())
        return self._worker

    async def _run_rebuilds(self):
        while True:
            self._pending = False
            try:
                await self.rebuild()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.rebuilds_failed += 1
                self.stats.last_error = str(e)
                logger.error(f"Rebuild failed, keeping snapshot #{self.index.current().sequence}: {e}")

            if not self._pending:
                return
            logger.info("Directory changed during rebuild; rebuilding again")

    async def ensure_ready(self) -> Snapshot:
        """
        Make sure a first snapshot has been attempted before querying.

        Returns:
            The current snapshot (empty if the first rebuild failed)
        """
        if not self.index.has_published() and not self._closed:
            worker = self._worker if self.is_rebuilding else self.request_rebuild()
            await asyncio.shield(worker)
        return self.index.current()

    async def run(self, changes: AsyncIterator[None]):
        """Consume a directory change stream, requesting a rebuild per event."""
        async for _ in changes:
            if self._closed:
                break
            logger.debug("Directory change notification received")
            self.request_rebuild()

    async def close(self):
        """Cancel any in-flight rebuild and pending write-backs."""
        self._closed = True
        tasks = list(self._write_backs)
        if self._worker is not None and not self._worker.done():
            tasks.append(self._worker)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Sync engine stopped")
