"""
FastAPI layer driving the background-removal controller.

Endpoints:
 - GET /health
 - GET /status
 - POST /upload          (multipart file)
 - POST /upload-url      (JSON image reference)
 - GET /original
 - GET /result
 - GET /download
 - POST /reset
 - POST /model/retry      (load the model when not preloaded, or after a failure)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel

from . import config
from .controller import BackgroundRemovalController, ControllerSnapshot
from .errors import ImageFetchError, UnsupportedMediaTypeError, UnsupportedReferenceError
from .image_io import fetch_image_bytes, guess_content_type
from .worker import InferenceWorker, WorkerState

logger = logging.getLogger(__name__)

# Worker states from which a load can be requested over HTTP.
LOADABLE_STATES = {WorkerState.UNINITIALIZED, WorkerState.FAILED}


class UploadUrlRequest(BaseModel):
    url: str
    contentType: Optional[str] = None


class UploadResponse(BaseModel):
    requestId: int
    requestState: str


class StatusResponse(BaseModel):
    modelReady: bool
    workerState: str
    requestState: str
    requestId: Optional[int] = None
    error: Optional[str] = None
    modelError: Optional[str] = None
    hasResult: bool


def _status_response(snapshot: ControllerSnapshot) -> StatusResponse:
    return StatusResponse(
        modelReady=snapshot.model_ready,
        workerState=snapshot.worker_state.value,
        requestState=snapshot.request_state.value,
        requestId=snapshot.request_id,
        error=snapshot.error,
        modelError=snapshot.model_error,
        hasResult=snapshot.has_result,
    )


def create_app(
    controller: Optional[BackgroundRemovalController] = None,
    settings: Optional[config.Settings] = None,
) -> FastAPI:
    """
    Build the application.

    When no controller is injected, the lifespan hook starts a worker thread
    and wires a controller to it. With ``preload_model`` off the model loads
    on the first POST /model/retry.
    """
    settings = settings or config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        worker: Optional[InferenceWorker] = None
        if getattr(app.state, "controller", None) is None:
            worker = InferenceWorker(settings=settings)
            app.state.controller = BackgroundRemovalController(worker, settings=settings)
            worker.start()
            logger.info("Inference worker started for %s", settings.model_id)
        try:
            yield
        finally:
            if worker is not None:
                worker.stop(timeout=5)

    app = FastAPI(title="RMBG Background Removal Service", version="0.1.0", lifespan=lifespan)
    app.state.controller = controller

    def _controller(request: Request) -> BackgroundRemovalController:
        ctrl = request.app.state.controller
        if ctrl is None:
            raise HTTPException(status_code=503, detail="Service is starting")
        return ctrl

    def _require_ready(ctrl: BackgroundRemovalController) -> None:
        # Uploads stay disabled until the model is loaded.
        if not ctrl.model_ready:
            detail = "Model is not ready yet"
            if ctrl.worker.state in LOADABLE_STATES:
                detail += "; POST /model/retry to load it"
            raise HTTPException(status_code=409, detail=detail)

    def _png_response(ctrl: BackgroundRemovalController, attachment: bool) -> Response:
        result = ctrl.result
        if result is None:
            raise HTTPException(status_code=404, detail="No result available")
        headers = {}
        if attachment:
            headers["Content-Disposition"] = f'attachment; filename="{result.filename}"'
        return Response(content=result.png_bytes, media_type="image/png", headers=headers)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/status", response_model=StatusResponse)
    def status(request: Request):
        return _status_response(_controller(request).snapshot())

    @app.post("/upload", response_model=UploadResponse)
    def upload(request: Request, file: UploadFile = File(...)):
        ctrl = _controller(request)
        _require_ready(ctrl)
        data = file.file.read()
        try:
            uploaded = ctrl.upload_file(data, file.content_type, filename=file.filename)
        except UnsupportedMediaTypeError as exc:
            raise HTTPException(status_code=415, detail=str(exc)) from exc
        return UploadResponse(requestId=uploaded.request_id, requestState=ctrl.request_state.value)

    @app.post("/upload-url", response_model=UploadResponse)
    def upload_url(request: Request, body: UploadUrlRequest):
        ctrl = _controller(request)
        _require_ready(ctrl)
        try:
            uploaded = ctrl.upload_url(body.url, content_type=body.contentType)
        except UnsupportedReferenceError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except UnsupportedMediaTypeError as exc:
            raise HTTPException(status_code=415, detail=str(exc)) from exc
        return UploadResponse(requestId=uploaded.request_id, requestState=ctrl.request_state.value)

    @app.get("/original")
    def original(request: Request):
        ctrl = _controller(request)
        uploaded = ctrl.upload
        if uploaded is None:
            raise HTTPException(status_code=404, detail="No image uploaded")
        try:
            data = fetch_image_bytes(uploaded.url, settings.request_timeout_seconds)
        except ImageFetchError as exc:
            logger.exception("Failed to read uploaded image: %s", exc)
            raise HTTPException(status_code=502, detail="Could not read uploaded image") from exc
        media_type = uploaded.content_type or guess_content_type(uploaded.url) or "application/octet-stream"
        return Response(content=data, media_type=media_type)

    @app.get("/result")
    def result(request: Request):
        return _png_response(_controller(request), attachment=False)

    @app.get("/download")
    def download(request: Request):
        return _png_response(_controller(request), attachment=True)

    @app.post("/reset", response_model=StatusResponse)
    def reset(request: Request):
        ctrl = _controller(request)
        ctrl.on_reset()
        return _status_response(ctrl.snapshot())

    @app.post("/model/retry", response_model=StatusResponse)
    def retry_model(request: Request):
        ctrl = _controller(request)
        if ctrl.worker.state not in LOADABLE_STATES:
            raise HTTPException(status_code=409, detail=f"Model is {ctrl.worker.state.value}")
        ctrl.retry_model_load()
        return _status_response(ctrl.snapshot())

    return app


app = create_app()
