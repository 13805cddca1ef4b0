"""Exception types raised across the worker, compositor and controller."""

from __future__ import annotations


class BackgroundRemovalError(Exception):
    """Base class for every failure this package reports."""


class ModelLoadError(BackgroundRemovalError):
    """The model or its preprocessing configuration could not be acquired."""


class ImageFetchError(BackgroundRemovalError, ValueError):
    """An image reference could not be read (network, file or data URL)."""


class ImageDecodeError(BackgroundRemovalError, ValueError):
    """Image bytes are corrupt or in an unsupported format."""


class UnsupportedMediaTypeError(BackgroundRemovalError, ValueError):
    """An upload was rejected because its declared type is not an image."""


class UnsupportedReferenceError(BackgroundRemovalError, ValueError):
    """An image reference uses a scheme the upload surface does not accept."""


class MaskDimensionError(BackgroundRemovalError):
    """Mask dimensions do not match the image it is composited onto."""

    def __init__(self, expected: tuple[int, int], mask_size: tuple[int, int], mask_length: int):
        self.expected = expected
        self.mask_size = mask_size
        self.mask_length = mask_length
        super().__init__(
            f"Mask {mask_size[0]}x{mask_size[1]} ({mask_length} values) does not match "
            f"image {expected[0]}x{expected[1]} ({expected[0] * expected[1]} pixels)"
        )


class InferenceError(BackgroundRemovalError):
    """The model produced output that cannot be turned into an alpha mask."""
