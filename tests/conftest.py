"""Shared fixtures and in-memory collaborators for the test suite."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest
from sqlalchemy.pool import NullPool

from biomatch.database import build_engine, build_session_maker, create_schema
from biomatch.descriptor_index import DescriptorIndex, Snapshot
from biomatch.exceptions import BlobNotFoundError, DirectoryError, ImageDecodeError
from biomatch.features import FeatureBundle, LabeledFeatureSet, Modality, SubjectLabel, dimension_for
from biomatch.interfaces import EnrollmentRecord
from biomatch.models import EnrollmentDB  # noqa: F401


def vector(modality, first: float = 0.0, second: float = 0.0) -> np.ndarray:
    """Zero vector of the modality's dimension with the first two coordinates set."""
    values = np.zeros(dimension_for(modality))
    values[0] = first
    values[1] = second
    return values


def bundle(face: Optional[float] = 0.0, iris: Optional[float] = 0.0, ear: Optional[float] = 0.0,
           image_ref: Optional[str] = None) -> FeatureBundle:
    """Bundle whose vectors differ only in their first coordinate."""
    arrays = {}
    if face is not None:
        arrays[Modality.FACE] = vector(Modality.FACE, face)
    if iris is not None:
        arrays[Modality.IRIS] = vector(Modality.IRIS, iris)
    if ear is not None:
        arrays[Modality.EAR] = vector(Modality.EAR, ear)
    return FeatureBundle.from_arrays(arrays, image_ref=image_ref)


def subject(subject_id: str, *bundles: FeatureBundle, name: Optional[str] = None) -> LabeledFeatureSet:
    label = SubjectLabel(
        subject_id=subject_id,
        display_name=name or subject_id.upper(),
        image_refs=tuple(b.image_ref or f"{subject_id}-{i}.jpg" for i, b in enumerate(bundles))
    )
    return LabeledFeatureSet(label=label, bundles=tuple(bundles))


def make_snapshot(*entries: LabeledFeatureSet, sequence: int = 1) -> Snapshot:
    return Snapshot(entries, sequence=sequence)


class FakeDirectory:
    """In-memory enrollment directory."""

    def __init__(self, records: Sequence[EnrollmentRecord] = (), gate: Optional[asyncio.Event] = None,
                 fail_list: bool = False, fail_updates: bool = False,
                 update_gate: Optional[asyncio.Event] = None):
        self.records: List[EnrollmentRecord] = list(records)
        self.gate = gate
        self.fail_list = fail_list
        self.fail_updates = fail_updates
        self.update_gate = update_gate
        self.list_calls = 0
        self.updates: List[tuple] = []
        self.events: List[None] = []

    async def list_enrollments(self) -> List[EnrollmentRecord]:
        self.list_calls += 1
        if self.gate is not None and self.list_calls == 1:
            await self.gate.wait()
        if self.fail_list:
            raise DirectoryError("directory unavailable")
        return list(self.records)

    async def update_image_refs(self, subject_id: str, image_refs: Sequence[str]) -> None:
        if self.update_gate is not None:
            await self.update_gate.wait()
        if self.fail_updates:
            raise DirectoryError("write refused")
        self.updates.append((subject_id, list(image_refs)))
        self.records = [
            EnrollmentRecord(r.subject_id, r.display_name, tuple(image_refs)) if r.subject_id == subject_id else r
            for r in self.records
        ]

    async def changes(self):
        for event in list(self.events):
            yield event


class FakeBlobStore:
    """Blob store serving ``ref -> ref.encode()`` for known refs."""

    def __init__(self, refs: Sequence[str] = (), missing: Sequence[str] = ()):
        self.refs = set(refs)
        self.missing = set(missing)
        self.fetched: List[str] = []

    async def fetch_image_bytes(self, ref: str) -> bytes:
        self.fetched.append(ref)
        if ref in self.missing or (self.refs and ref not in self.refs):
            raise BlobNotFoundError(ref)
        return ref.encode()


class FakeExtractor:
    """Extractor that looks image bytes up in a table; unknown bytes have no subject."""

    def __init__(self, table: Optional[Dict[bytes, FeatureBundle]] = None, corrupt: Sequence[bytes] = ()):
        self.table = dict(table or {})
        self.corrupt = set(corrupt)
        self.calls = 0

    def extract(self, image_bytes: bytes) -> Optional[FeatureBundle]:
        self.calls += 1
        if image_bytes in self.corrupt:
            raise ImageDecodeError("not an image")
        return self.table.get(image_bytes)


@pytest.fixture
def index():
    return DescriptorIndex()


@pytest.fixture
def alice_bob_records():
    return [
        EnrollmentRecord("alice", "Alice", ("alice-1.jpg", "alice-2.jpg")),
        EnrollmentRecord("bob", "Bob", ("bob-1.jpg",)),
    ]


@pytest.fixture
def alice_bob_extractor():
    return FakeExtractor({
        b"alice-1.jpg": bundle(face=0.0, iris=0.0, ear=0.0),
        b"alice-2.jpg": bundle(face=0.1, iris=0.0, ear=0.0),
        b"bob-1.jpg": bundle(face=1.0, iris=1.0, ear=1.0),
        b"query-alice": bundle(face=0.05, iris=0.0, ear=0.0),
        b"query-bob": bundle(face=0.95, iris=1.0, ear=1.0),
    })


@pytest.fixture
def sqlite_session_maker(tmp_path):
    """Session factory over a throwaway SQLite file with the enrollments table created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'enrollments.db'}", poolclass=NullPool)
    asyncio.run(create_schema(engine))
    yield build_session_maker(engine)
    asyncio.run(engine.dispose())
