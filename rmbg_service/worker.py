"""
Background inference worker.

The worker owns the one model + preprocessor pair for its lifetime. It loads
them lazily on first use, serves inference requests from a queue on its own
thread so the request path never waits on a model download, and reports
every outcome back to listeners as a `WorkerMessage`:

 - ``initiate``: model load started
 - ``ready``: model load finished
 - ``complete``: a mask for ``request_id``
 - ``error``: a typed failure, for ``request_id`` or for the model load
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import queue
import threading
from typing import Callable, List, Optional

import numpy as np
import torch
import torch.nn.functional as F

from . import config
from .compositor import AlphaMask
from .errors import BackgroundRemovalError, InferenceError, ModelLoadError
from .image_io import load_image
from .model_loader import ModelBundle, load_model_bundle
from .preprocessing import PreprocessResult

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class MessageStatus(str, Enum):
    INITIATE = "initiate"
    READY = "ready"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class InferenceRequest:
    request_id: int
    url: str


@dataclass(frozen=True)
class WorkerMessage:
    status: MessageStatus
    request_id: Optional[int] = None
    mask: Optional[AlphaMask] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


Listener = Callable[[WorkerMessage], None]
Loader = Callable[[config.Settings], ModelBundle]

_INITIALIZE = object()
_STOP = object()


def _select_matte(output) -> torch.Tensor:
    """Dig the (B, 1, H, W) matte out of whatever structure the model returns."""
    while isinstance(output, (list, tuple)):
        if not output:
            raise InferenceError("Model returned an empty output")
        output = output[0]
    if isinstance(output, dict):
        output = output.get("output", output.get("logits"))
    if not isinstance(output, torch.Tensor):
        raise InferenceError(f"Unexpected model output type: {type(output).__name__}")

    if output.dim() == 2:
        output = output.unsqueeze(0).unsqueeze(0)
    elif output.dim() == 3:
        output = output.unsqueeze(0)
    if output.dim() != 4 or output.shape[1] != 1:
        raise InferenceError(f"Expected a single-channel matte, got shape {tuple(output.shape)}")
    return output


def run_inference(preprocessed: PreprocessResult, model) -> AlphaMask:
    """Run the model and resize its matte back to the original resolution."""
    with torch.no_grad():
        output = model(preprocessed.tensor)
    pred_matte = _select_matte(output).float()

    width, height = preprocessed.orig_size
    matte = F.interpolate(pred_matte, size=(height, width), mode="bilinear", align_corners=False)
    alpha = matte[0, 0].detach().cpu().numpy()
    alpha_u8 = np.clip(np.rint(alpha * 255.0), 0, 255).astype(np.uint8)
    return AlphaMask(data=alpha_u8.reshape(-1), width=width, height=height)


class InferenceWorker:
    """Lazily initialized model host with a single background thread."""

    def __init__(
        self,
        loader: Optional[Loader] = None,
        settings: Optional[config.Settings] = None,
    ):
        self.settings = settings or config.get_settings()
        self._loader = loader or load_model_bundle
        self._bundle: Optional[ModelBundle] = None
        self._state = WorkerState.UNINITIALIZED
        self._init_lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> WorkerState:
        return self._state

    # ---- Messaging ----
    def add_listener(self, listener: Listener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, message: WorkerMessage) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(message)

    # ---- Lifecycle ----
    def initialize(self) -> WorkerState:
        """
        Load the model once; later calls return immediately.

        Raises:
            ModelLoadError: when the model cannot be acquired. The worker is
            left in FAILED and a later call retries the load.
        """
        if self._state is WorkerState.READY:
            return self._state

        with self._init_lock:
            if self._state is WorkerState.READY:
                return self._state

            self._state = WorkerState.LOADING
            self._emit(WorkerMessage(status=MessageStatus.INITIATE))
            try:
                bundle = self._loader(self.settings)
            except Exception as exc:  # noqa: BLE001
                self._state = WorkerState.FAILED
                error = exc if isinstance(exc, ModelLoadError) else ModelLoadError(str(exc))
                logger.error("Model load failed: %s", error)
                self._emit(
                    WorkerMessage(
                        status=MessageStatus.ERROR,
                        error=str(error),
                        error_type=type(error).__name__,
                    )
                )
                if error is exc:
                    raise
                raise error from exc

            self._bundle = bundle
            self._state = WorkerState.READY
            self._emit(WorkerMessage(status=MessageStatus.READY))
        return self._state

    def infer(self, image_ref: str) -> AlphaMask:
        """Decode the referenced image and predict its alpha mask."""
        self.initialize()
        bundle = self._bundle
        if bundle is None:
            raise ModelLoadError("Model is not loaded")
        image = load_image(image_ref, self.settings.request_timeout_seconds)
        preprocessed = bundle.preprocessor(image)
        mask = run_inference(preprocessed, bundle.model)
        logger.debug("Inferred %dx%d mask for %.80s", mask.width, mask.height, image_ref)
        return mask

    # ---- Background thread ----
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="rmbg-worker", daemon=True)
        self._thread.start()
        if self.settings.preload_model:
            self._queue.put(_INITIALIZE)

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def post_message(self, request: InferenceRequest) -> None:
        """Queue an inference request; the outcome arrives as a message."""
        self._queue.put(request)

    def request_initialize(self) -> None:
        """Queue a (re)load of the model on the worker thread."""
        self._queue.put(_INITIALIZE)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if item is _INITIALIZE:
                    self._initialize_quietly()
                else:
                    self._handle(item)  # type: ignore[arg-type]
            finally:
                self._queue.task_done()

    def _initialize_quietly(self) -> None:
        try:
            self.initialize()
        except ModelLoadError:
            # Already reported to listeners as an error message.
            pass

    def _handle(self, request: InferenceRequest) -> None:
        logger.info("Processing request id=%d", request.request_id)
        try:
            mask = self.infer(request.url)
        except ModelLoadError as exc:
            self._emit_failure(request, exc)
        except BackgroundRemovalError as exc:
            logger.warning("Request id=%d failed: %s", request.request_id, exc)
            self._emit_failure(request, exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Inference failed for request id=%d", request.request_id)
            self._emit_failure(request, exc)
        else:
            self._emit(WorkerMessage(status=MessageStatus.COMPLETE, request_id=request.request_id, mask=mask))

    def _emit_failure(self, request: InferenceRequest, exc: Exception) -> None:
        self._emit(
            WorkerMessage(
                status=MessageStatus.ERROR,
                request_id=request.request_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        )
