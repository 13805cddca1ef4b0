"""
Image preprocessing for RMBG.

RMBG expects a fixed square input: the image is resized (no padding, aspect
ratio not preserved), rescaled to [0, 1] and normalized channel-wise with the
mean/std published alongside the model weights.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from PIL import Image
import torch

from .config import Settings

_RESAMPLE = {
    "nearest": Image.NEAREST,
    "bilinear": Image.BILINEAR,
    "bicubic": Image.BICUBIC,
}


@dataclass
class PreprocessResult:
    tensor: torch.Tensor
    original_image: Image.Image
    orig_size: Tuple[int, int]  # (width, height)


class ImagePreprocessor:
    """Turns a PIL image into the normalized NCHW tensor the model consumes."""

    def __init__(
        self,
        size: int = 1024,
        image_mean: Sequence[float] = (0.5, 0.5, 0.5),
        image_std: Sequence[float] = (1.0, 1.0, 1.0),
        rescale_factor: float = 1.0 / 255.0,
        do_rescale: bool = True,
        do_normalize: bool = True,
        resample: str = "bilinear",
        device: torch.device = torch.device("cpu"),
    ):
        self.size = size
        self.image_mean = np.asarray(image_mean, dtype=np.float32)
        self.image_std = np.asarray(image_std, dtype=np.float32)
        self.rescale_factor = rescale_factor
        self.do_rescale = do_rescale
        self.do_normalize = do_normalize
        self.resample = resample
        self.device = device

    @classmethod
    def from_settings(cls, settings: Settings, device: torch.device) -> "ImagePreprocessor":
        return cls(
            size=settings.input_size,
            image_mean=settings.image_mean,
            image_std=settings.image_std,
            rescale_factor=settings.rescale_factor,
            do_rescale=settings.do_rescale,
            do_normalize=settings.do_normalize,
            resample=settings.resample,
            device=device,
        )

    def __call__(self, image: Image.Image) -> PreprocessResult:
        rgb = image.convert("RGB")
        orig_size = rgb.size
        resized = rgb.resize((self.size, self.size), _RESAMPLE[self.resample])

        im_np = np.asarray(resized).astype("float32")
        if self.do_rescale:
            im_np = im_np * self.rescale_factor
        if self.do_normalize:
            im_np = (im_np - self.image_mean) / self.image_std
        im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW

        tensor = torch.from_numpy(np.ascontiguousarray(im_np)).unsqueeze(0).to(self.device)
        return PreprocessResult(tensor=tensor, original_image=rgb, orig_size=orig_size)
