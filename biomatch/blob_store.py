"""
File-system blob store for enrollment images.

References are either object paths relative to ``BLOB_ROOT``
(``users/<uid>/uploads/<file>``) or Firebase Storage download URLs, whose
encoded object path (``.../o/users%2F<uid>%2Fuploads%2F<file>?alt=media``)
is mapped onto the same layout.
"""
import asyncio
import logging
from pathlib import Path
from typing import Union
from urllib.parse import unquote, urlparse

from biomatch.config import BLOB_ROOT
from biomatch.exceptions import BlobNotFoundError

logger = logging.getLogger(__name__)


def object_path_from_ref(ref: str) -> str:
    """
    Resolve an image reference to an object path.

    Examples:
        >>> object_path_from_ref("users/u1/uploads/a.jpg")
        'users/u1/uploads/a.jpg'
        >>> object_path_from_ref(
        ...     "https://firebasestorage.googleapis.com/v0/b/app.appspot.com/o/"
        ...     "users%2Fu1%2Fuploads%2Fa.jpg?alt=media&token=t")
        'users/u1/uploads/a.jpg'
    """
    if "://" not in ref:
        return ref.lstrip("/")

    path = urlparse(ref).path
    if "/o/" in path:
        # Firebase keeps the whole object path URL-encoded after /o/
        path = path.split("/o/", 1)[1]
    return unquote(path).lstrip("/")


class FileBlobStore:
    """Reads enrollment images from a local directory tree."""

    def __init__(self, root: Union[str, Path] = BLOB_ROOT):
        self.root = Path(root).resolve()

    def _resolve(self, ref: str) -> Path:
        object_path = object_path_from_ref(ref)
        path = (self.root / object_path).resolve()
        if self.root not in path.parents:
            raise BlobNotFoundError(ref)
        return path

    def _read(self, ref: str) -> bytes:
        path = self._resolve(ref)
        if not path.is_file():
            raise BlobNotFoundError(ref)
        return path.read_bytes()

    async def fetch_image_bytes(self, ref: str) -> bytes:
        """
        Raises:
            BlobNotFoundError: If the object does not exist
        """
        data = await asyncio.to_thread(self._read, ref)
        logger.debug(f"Fetched {len(data)} bytes for {ref}")
        return data
