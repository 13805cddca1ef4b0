from __future__ import annotations

from io import BytesIO
import threading
from typing import List, Tuple

import numpy as np
from PIL import Image
import pytest
import torch

from rmbg_service.config import Settings
from rmbg_service.controller import BackgroundRemovalController
from rmbg_service.model_loader import ModelBundle
from rmbg_service.preprocessing import ImagePreprocessor
from rmbg_service.worker import InferenceRequest, InferenceWorker, WorkerMessage


def make_png(size: Tuple[int, int], color=(255, 0, 0), mode: str = "RGB") -> bytes:
    buf = BytesIO()
    Image.new(mode, size, color).save(buf, format="PNG")
    return buf.getvalue()


def decode_rgba(png_bytes: bytes) -> np.ndarray:
    return np.array(Image.open(BytesIO(png_bytes)).convert("RGBA"))


class ConstantModel:
    """Stands in for the segmentation network: a constant single-channel matte."""

    def __init__(self, value: float = 1.0, channels: int = 1):
        self.value = value
        self.channels = channels
        self.calls = 0

    def __call__(self, pixel_values: torch.Tensor):
        self.calls += 1
        _, _, h, w = pixel_values.shape
        # Same nesting as RMBG-1.4: a list of side outputs, each a list.
        return [[torch.full((1, self.channels, h, w), self.value)]]


class CountingLoader:
    def __init__(self, model=None, fail_times: int = 0):
        self.model = model or ConstantModel()
        self.fail_times = fail_times
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, settings: Settings) -> ModelBundle:
        with self._lock:
            self.calls += 1
            if self.calls <= self.fail_times:
                raise OSError("hub unreachable")
        device = torch.device("cpu")
        return ModelBundle(
            model=self.model,
            preprocessor=ImagePreprocessor.from_settings(settings, device),
            device=device,
        )


class RecordingWorker(InferenceWorker):
    """Worker whose requests are recorded instead of queued for a thread."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.requests: List[InferenceRequest] = []
        self.init_requests = 0

    def post_message(self, request: InferenceRequest) -> None:
        self.requests.append(request)

    def request_initialize(self) -> None:
        self.init_requests += 1


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        input_size=8,
        preload_model=False,
        debug=False,
        debug_output_dir=tmp_path / "debug",
        device="cpu",
    )


@pytest.fixture
def loader() -> CountingLoader:
    return CountingLoader()


@pytest.fixture
def messages() -> List[WorkerMessage]:
    return []


@pytest.fixture
def worker(settings, loader, messages) -> RecordingWorker:
    w = RecordingWorker(loader=loader, settings=settings)
    w.add_listener(messages.append)
    return w


@pytest.fixture
def controller(worker, settings) -> BackgroundRemovalController:
    return BackgroundRemovalController(worker, settings=settings)


@pytest.fixture
def ready_controller(controller, worker) -> BackgroundRemovalController:
    worker.initialize()
    assert controller.model_ready
    return controller
