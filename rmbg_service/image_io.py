"""
Image reference handling.

An image reference is anything a user can hand us: uploaded bytes wrapped as
a data URL, a remote http(s) URL, a ``file://`` URL or a plain local path.
The worker and the controller both resolve references through here so the
decoded dimensions always agree between the mask and the composite.
"""

from __future__ import annotations

import base64
import binascii
from io import BytesIO
import logging
import mimetypes
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, unquote_to_bytes, urlparse

from PIL import Image, UnidentifiedImageError
import requests

from .errors import ImageDecodeError, ImageFetchError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 5


def is_image_type(content_type: Optional[str]) -> bool:
    """Return True for MIME types under ``image/``."""
    if not content_type:
        return False
    return content_type.split(";", 1)[0].strip().lower().startswith("image/")


def guess_content_type(url: str) -> Optional[str]:
    """Best-effort MIME type for a reference, or None when it cannot be told."""
    if url.startswith("data:"):
        header = url[5:].split(",", 1)[0]
        return header.split(";", 1)[0] or None
    path = urlparse(url).path or url
    content_type, _ = mimetypes.guess_type(path)
    return content_type


REMOTE_SCHEMES = {"http", "https", "data"}


def is_remote_reference(url: str) -> bool:
    """True for references a browser could hand us: http(s) or data URLs."""
    return urlparse(url).scheme.lower() in REMOTE_SCHEMES


def to_data_url(data: bytes, content_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


def _read_data_url(url: str) -> bytes:
    try:
        header, payload = url[5:].split(",", 1)
    except ValueError as exc:
        raise ImageFetchError("Malformed data URL") from exc
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ImageFetchError("Malformed base64 payload in data URL") from exc
    return unquote_to_bytes(payload)


def _read_remote(url: str, timeout_seconds: int) -> bytes:
    try:
        resp = requests.get(url, timeout=(CONNECT_TIMEOUT_SECONDS, timeout_seconds))
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise ImageFetchError(f"Could not download image from {url}") from exc
    return resp.content


def _read_local(url: str) -> bytes:
    path = Path(unquote(urlparse(url).path)) if url.startswith("file://") else Path(url)
    try:
        return path.read_bytes()
    except OSError as exc:
        raise ImageFetchError(f"Could not read image file {path}") from exc


def fetch_image_bytes(url: str, timeout_seconds: int = 30) -> bytes:
    """Resolve an image reference into raw bytes."""
    if url.startswith("data:"):
        return _read_data_url(url)
    scheme = urlparse(url).scheme.lower()
    if scheme in {"http", "https"}:
        logger.debug("Downloading image from %s", url)
        return _read_remote(url, timeout_seconds)
    return _read_local(url)


def decode_image(data: bytes) -> Image.Image:
    """Fully decode image bytes so corrupt files fail here, not later."""
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise ImageDecodeError("Invalid image data") from exc
    return image


def load_image(url: str, timeout_seconds: int = 30) -> Image.Image:
    return decode_image(fetch_image_bytes(url, timeout_seconds))
