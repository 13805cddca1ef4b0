"""Merge alpha masks into the original image and encode the cutout."""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from . import config
from .errors import MaskDimensionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlphaMask:
    """Row-major uint8 opacity values sized to the original image."""

    data: np.ndarray  # flat, length == width * height
    width: int
    height: int

    @classmethod
    def from_array(cls, array: np.ndarray) -> "AlphaMask":
        """Build a mask from a (height, width) array."""
        arr = np.asarray(array)
        if arr.ndim != 2:
            raise ValueError(f"Expected a 2D mask array, got shape {arr.shape}")
        if not np.issubdtype(arr.dtype, np.integer):
            raise ValueError(f"Expected integer mask values in [0, 255], got dtype {arr.dtype}")
        if arr.size and (arr.min() < 0 or arr.max() > 255):
            raise ValueError("Mask values must lie in [0, 255]")
        height, width = arr.shape
        return cls(data=arr.astype(np.uint8).reshape(-1), width=width, height=height)

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def __len__(self) -> int:
        return int(self.data.size)


@dataclass(frozen=True)
class CompositeResult:
    png_bytes: bytes
    width: int
    height: int
    filename: str = "removed-background.png"

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


def _check_dimensions(image_size: Tuple[int, int], mask: AlphaMask) -> None:
    width, height = image_size
    if mask.size != image_size or len(mask) != width * height:
        raise MaskDimensionError(image_size, mask.size, len(mask))


def apply_alpha(image: Image.Image, mask: AlphaMask) -> np.ndarray:
    """
    Return an (H, W, 4) RGBA array whose alpha channel is the mask.

    RGB bytes are the original image's; only byte ``4*i + 3`` of each pixel
    changes. Raises MaskDimensionError before touching anything when the mask
    was computed for a different image size.
    """
    _check_dimensions(image.size, mask)
    rgba = np.array(image.convert("RGBA"), dtype=np.uint8)
    flat = rgba.reshape(-1)
    flat[3::4] = mask.data
    return rgba


def encode_png(rgba: np.ndarray) -> bytes:
    out = Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8))
    buf = BytesIO()
    out.save(buf, format="PNG")
    return buf.getvalue()


def _maybe_dump_debug(rgba: np.ndarray, debug_dir: Path) -> None:
    """Optionally write the mask and cutout when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        mask_path = debug_dir / "mask.png"
        cutout_path = debug_dir / "cutout.png"

        cv2.imwrite(str(mask_path), np.ascontiguousarray(rgba[..., 3]))
        cv2.imwrite(str(cutout_path), cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGRA))
        logger.debug("composite: wrote debug outputs to %s", debug_dir)
    except Exception as exc:  # noqa: BLE001
        logger.warning("composite: failed to write debug outputs: %s", exc)


def composite(
    image: Image.Image,
    mask: AlphaMask,
    settings: Optional[config.Settings] = None,
) -> CompositeResult:
    """Apply the mask to the image and encode the result as a lossless PNG."""
    settings = settings or config.get_settings()
    rgba = apply_alpha(image, mask)
    logger.debug(
        "composite: %dx%d mask min=%d max=%d mean=%.1f",
        mask.width,
        mask.height,
        int(mask.data.min()) if len(mask) else 0,
        int(mask.data.max()) if len(mask) else 0,
        float(mask.data.mean()) if len(mask) else 0.0,
    )

    if settings.debug:
        _maybe_dump_debug(rgba, Path(settings.debug_output_dir))

    return CompositeResult(
        png_bytes=encode_png(rgba),
        width=mask.width,
        height=mask.height,
        filename=settings.download_filename,
    )
