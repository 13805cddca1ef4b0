"""
Model loading utilities for RMBG.

The loader:
 - picks the inference device,
 - pulls the segmentation model from the Hugging Face hub,
 - pairs it with a preprocessor configured from settings,
 - wraps every acquisition failure in `ModelLoadError`.

Keeping a single shared instance is the worker's job, not the loader's.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Optional

import torch
from transformers import AutoModelForImageSegmentation

from . import config
from .errors import ModelLoadError
from .preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


@dataclass
class ModelBundle:
    model: Any
    preprocessor: ImagePreprocessor
    device: torch.device


def select_device(preference: Optional[str] = None) -> torch.device:
    """Return the inference device, preferring CUDA -> Apple MPS -> CPU."""
    if preference:
        return torch.device(preference)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    return torch.device("cpu")


def load_model_bundle(settings: Optional[config.Settings] = None) -> ModelBundle:
    """Fetch the pretrained model and build its preprocessor."""
    settings = settings or config.get_settings()
    device = select_device(settings.device)

    logger.info("Loading %s (revision=%s) on %s", settings.model_id, settings.model_revision, device)
    kwargs = {"trust_remote_code": True, "local_files_only": settings.local_files_only}
    if settings.model_revision:
        kwargs["revision"] = settings.model_revision
    if settings.model_cache_dir:
        kwargs["cache_dir"] = str(settings.model_cache_dir)

    try:
        model = AutoModelForImageSegmentation.from_pretrained(settings.model_id, **kwargs)
        model.to(device)
        model.eval()
    except Exception as exc:  # noqa: BLE001
        raise ModelLoadError(f"Could not load model {settings.model_id}: {exc}") from exc

    preprocessor = ImagePreprocessor.from_settings(settings, device)
    logger.info("Model %s loaded on device: %s", settings.model_id, device)
    return ModelBundle(model=model, preprocessor=preprocessor, device=device)
