"""
Interfaces for the collaborators the matching core depends on.

The sync engine and recognition service only talk to these protocols; the
SQL directory, file blob store and DeepFace extractor are the default
implementations, and tests substitute in-memory fakes.
"""
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from biomatch.features import FeatureBundle


@dataclass(frozen=True)
class EnrollmentRecord:
    """
    One subject as stored in the directory.

    Attributes:
        subject_id: Directory key of the subject
        display_name: Human readable name
        image_refs: Ordered references to enrollment images in blob storage
    """
    subject_id: str
    display_name: str
    image_refs: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "image_refs", tuple(self.image_refs))


@runtime_checkable
class EnrollmentDirectory(Protocol):
    """Mutable source of truth for enrolled subjects."""

    async def list_enrollments(self) -> List[EnrollmentRecord]:
        """Return every enrollment record in a stable order."""
        ...

    async def update_image_refs(self, subject_id: str, image_refs: Sequence[str]) -> None:
        """Replace the image references of one subject."""
        ...

    def changes(self) -> AsyncIterator[None]:
        """Yield once each time any enrollment record changes."""
        ...


@runtime_checkable
class BlobStore(Protocol):
    """Storage holding the enrollment images."""

    async def fetch_image_bytes(self, ref: str) -> bytes:
        """
        Raises:
            BlobNotFoundError: If the object does not exist
        """
        ...


@runtime_checkable
class FeatureExtractor(Protocol):
    """Turns image bytes into per-modality feature vectors."""

    def extract(self, image_bytes: bytes) -> Optional[FeatureBundle]:
        """
        Returns:
            FeatureBundle, or None when no subject is detected

        Raises:
            ImageDecodeError: If the bytes are not a readable image
        """
        ...
