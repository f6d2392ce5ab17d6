"""
Exception types shared across the recognition pipeline
"""


class BiomatchError(Exception):
    """Base class for service errors."""


class InvalidFeatureVectorError(BiomatchError, ValueError):
    """A feature vector has the wrong shape, length or contains non-finite values."""


class ImageDecodeError(BiomatchError, ValueError):
    """Image bytes could not be decoded."""


class NoSubjectDetectedError(BiomatchError):
    """No face/biometric subject was found in a submitted image."""


class BlobNotFoundError(BiomatchError):
    """A referenced enrollment image does not exist in blob storage."""

    def __init__(self, ref: str):
        super().__init__(f"Image not found: {ref}")
        self.ref = ref


class DirectoryError(BiomatchError):
    """The enrollment directory could not be read or written."""
