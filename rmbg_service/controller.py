"""
Upload/preview/download controller.

Holds the per-session state the browser sees: whether the model is ready,
the currently uploaded image, the in-flight request and the finished
cutout. Every upload gets a new request id and only the result carrying the
current id is ever composited, so a slow response for an older upload can
never land on a newer image.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from pathlib import Path
import threading
from typing import Optional, Union

from . import config
from .compositor import AlphaMask, CompositeResult, composite
from .errors import BackgroundRemovalError, UnsupportedMediaTypeError, UnsupportedReferenceError
from .image_io import guess_content_type, is_image_type, is_remote_reference, load_image, to_data_url
from .worker import InferenceRequest, InferenceWorker, MessageStatus, WorkerMessage, WorkerState

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETE = "complete"


@dataclass(frozen=True)
class UploadedImage:
    request_id: int
    url: str
    content_type: Optional[str] = None
    filename: Optional[str] = None


@dataclass(frozen=True)
class ControllerSnapshot:
    model_ready: bool
    worker_state: WorkerState
    request_state: RequestState
    request_id: Optional[int]
    error: Optional[str]
    model_error: Optional[str]
    has_result: bool


class BackgroundRemovalController:
    def __init__(self, worker: InferenceWorker, settings: Optional[config.Settings] = None):
        self.worker = worker
        self.settings = settings or config.get_settings()
        self._lock = threading.RLock()
        self._model_ready = worker.state is WorkerState.READY
        self._model_error: Optional[str] = None
        self._request_state = RequestState.IDLE
        self._next_request_id = 0
        self._upload: Optional[UploadedImage] = None
        self._result: Optional[CompositeResult] = None
        self._error: Optional[str] = None
        worker.add_listener(self.handle_message)

    # ---- Read-only views ----
    @property
    def model_ready(self) -> bool:
        return self._model_ready

    @property
    def request_state(self) -> RequestState:
        return self._request_state

    @property
    def upload(self) -> Optional[UploadedImage]:
        return self._upload

    @property
    def result(self) -> Optional[CompositeResult]:
        return self._result

    @property
    def error(self) -> Optional[str]:
        return self._error

    def snapshot(self) -> ControllerSnapshot:
        with self._lock:
            return ControllerSnapshot(
                model_ready=self._model_ready,
                worker_state=self.worker.state,
                request_state=self._request_state,
                request_id=self._upload.request_id if self._upload else None,
                error=self._error,
                model_error=self._model_error,
                has_result=self._result is not None,
            )

    # ---- Uploads ----
    def upload_file(self, data: bytes, content_type: Optional[str], filename: Optional[str] = None) -> UploadedImage:
        """Accept dropped/selected file bytes. Only the declared type is checked."""
        if not is_image_type(content_type):
            raise UnsupportedMediaTypeError(f"Expected an image upload, got {content_type or 'unknown type'}")
        return self._dispatch(to_data_url(data, content_type), content_type, filename)

    def upload_url(self, url: str, content_type: Optional[str] = None) -> UploadedImage:
        """
        Accept an http(s) or data URL; a type that cannot be guessed is let through.

        Local paths and other schemes are rejected so callers cannot point the
        service at files on its own disk.
        """
        if not is_remote_reference(url):
            raise UnsupportedReferenceError(f"Unsupported image reference: {url[:80]}")
        content_type = content_type or guess_content_type(url)
        if content_type is not None and not is_image_type(content_type):
            raise UnsupportedMediaTypeError(f"Expected an image URL, got {content_type}")
        return self._dispatch(url, content_type, None)

    def _dispatch(self, url: str, content_type: Optional[str], filename: Optional[str]) -> UploadedImage:
        with self._lock:
            self._next_request_id += 1
            upload = UploadedImage(
                request_id=self._next_request_id,
                url=url,
                content_type=content_type,
                filename=filename,
            )
            self._upload = upload
            self._result = None
            self._error = None
            self._request_state = RequestState.PROCESSING
        logger.info("Dispatching request id=%d (%s)", upload.request_id, content_type or "unknown type")
        self.worker.post_message(InferenceRequest(request_id=upload.request_id, url=url))
        return upload

    # ---- Worker messages ----
    def handle_message(self, message: WorkerMessage) -> None:
        if message.status is MessageStatus.INITIATE:
            with self._lock:
                self._model_ready = False
                self._model_error = None
        elif message.status is MessageStatus.READY:
            with self._lock:
                self._model_ready = True
                self._model_error = None
        elif message.status is MessageStatus.COMPLETE:
            if message.request_id is None or message.mask is None:
                logger.warning("Ignoring complete message without request id or mask")
                return
            self.on_inference_complete(message.request_id, message.mask)
        elif message.status is MessageStatus.ERROR:
            self.on_inference_failed(message.request_id, message.error or "Unknown error")

    def on_inference_complete(self, request_id: int, mask: AlphaMask) -> Optional[CompositeResult]:
        """Composite the mask onto the current upload, unless it is stale."""
        upload = self._current_upload(request_id)
        if upload is None:
            return None

        try:
            image = load_image(upload.url, self.settings.request_timeout_seconds)
            result = composite(image, mask, settings=self.settings)
        except BackgroundRemovalError as exc:
            logger.warning("Compositing failed for request id=%d: %s", request_id, exc)
            with self._lock:
                if self._upload is upload:
                    self._error = str(exc)
                    self._request_state = RequestState.IDLE
            return None

        with self._lock:
            # Another upload or a reset may have happened while compositing.
            if self._upload is not upload:
                logger.info("Discarding result id=%d superseded during compositing", request_id)
                return None
            self._result = result
            self._request_state = RequestState.COMPLETE
            logger.info("Request id=%d complete (%dx%d)", request_id, result.width, result.height)
            return result

    def _current_upload(self, request_id: int) -> Optional[UploadedImage]:
        with self._lock:
            upload = self._upload
            if upload is None:
                return None
            if upload.request_id != request_id:
                logger.info("Discarding stale result id=%d (current id=%d)", request_id, upload.request_id)
                return None
            return upload

    def on_inference_failed(self, request_id: Optional[int], error: str) -> None:
        with self._lock:
            if request_id is None:
                # Model load failure, not tied to an upload.
                self._model_ready = False
                self._model_error = error
                return
            if self._upload is None or self._upload.request_id != request_id:
                logger.info("Discarding stale error id=%d", request_id)
                return
            self._error = error
            self._request_state = RequestState.IDLE

    def retry_model_load(self) -> None:
        self.worker.request_initialize()

    # ---- Download / reset ----
    def on_download(self, directory: Union[str, Path, None] = None) -> Optional[Path]:
        """Save the cutout under its fixed filename; None when nothing is ready."""
        with self._lock:
            result = self._result
        if result is None:
            return None
        target_dir = Path(directory) if directory is not None else Path.cwd()
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / result.filename
        path.write_bytes(result.png_bytes)
        logger.info("Saved cutout to %s", path)
        return path

    def on_reset(self) -> None:
        with self._lock:
            self._upload = None
            self._result = None
            self._error = None
            self._request_state = RequestState.IDLE
