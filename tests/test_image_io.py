import pytest
import requests

from rmbg_service import image_io
from rmbg_service.errors import ImageDecodeError, ImageFetchError
from rmbg_service.image_io import (
    decode_image,
    fetch_image_bytes,
    guess_content_type,
    is_image_type,
    is_remote_reference,
    load_image,
    to_data_url,
)

from conftest import make_png


@pytest.mark.parametrize(
    "content_type,expected",
    [
        ("image/png", True),
        ("IMAGE/JPEG", True),
        ("image/webp; charset=binary", True),
        ("text/plain", False),
        ("application/octet-stream", False),
        ("", False),
        (None, False),
    ],
)
def test_is_image_type(content_type, expected):
    assert is_image_type(content_type) is expected


def test_guess_content_type():
    assert guess_content_type("https://example.com/cat.jpg?x=1") == "image/jpeg"
    assert guess_content_type("data:image/png;base64,AAAA") == "image/png"
    assert guess_content_type("/tmp/notes.txt") == "text/plain"
    assert guess_content_type("https://example.com/render") is None


def test_data_url_resolves_to_original_bytes():
    data = make_png((3, 2))
    assert fetch_image_bytes(to_data_url(data, "image/png")) == data


def test_percent_encoded_data_url():
    assert fetch_image_bytes("data:text/plain,a%20b") == b"a b"


def test_malformed_data_url():
    with pytest.raises(ImageFetchError):
        fetch_image_bytes("data:image/png;base64,***")
    with pytest.raises(ImageFetchError):
        fetch_image_bytes("data:image/png;base64")


def test_local_path_and_file_url(tmp_path):
    path = tmp_path / "pic.png"
    path.write_bytes(make_png((5, 4)))

    assert load_image(str(path)).size == (5, 4)
    assert load_image(path.as_uri()).size == (5, 4)


def test_missing_file_is_a_fetch_error(tmp_path):
    with pytest.raises(ImageFetchError):
        fetch_image_bytes(str(tmp_path / "nope.png"))


def test_corrupt_bytes_are_a_decode_error():
    with pytest.raises(ImageDecodeError):
        decode_image(b"definitely not an image")


def test_decode_errors_are_value_errors():
    with pytest.raises(ValueError):
        decode_image(b"")


class _FakeResponse:
    def __init__(self, content=b"", status=200):
        self.content = content
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")


def test_remote_url_uses_requests(monkeypatch):
    data = make_png((2, 2))
    seen = {}

    def fake_get(url, timeout):
        seen["url"] = url
        seen["timeout"] = timeout
        return _FakeResponse(data)

    monkeypatch.setattr(image_io.requests, "get", fake_get)

    assert fetch_image_bytes("https://example.com/a.png", timeout_seconds=12) == data
    assert seen == {"url": "https://example.com/a.png", "timeout": (5, 12)}


def test_remote_http_error_is_a_fetch_error(monkeypatch):
    monkeypatch.setattr(image_io.requests, "get", lambda url, timeout: _FakeResponse(status=404))
    with pytest.raises(ImageFetchError):
        fetch_image_bytes("http://example.com/missing.png")


def test_remote_connection_error_is_a_fetch_error(monkeypatch):
    def boom(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(image_io.requests, "get", boom)
    with pytest.raises(ImageFetchError):
        fetch_image_bytes("http://example.com/a.png")


def test_remote_reference_schemes(tmp_path):
    assert is_remote_reference("https://example.com/cat.png")
    assert is_remote_reference("HTTP://example.com/cat.png")
    assert is_remote_reference("data:image/png;base64,AAAA")

    assert not is_remote_reference(str(tmp_path / "cat.png"))
    assert not is_remote_reference((tmp_path / "cat.png").as_uri())
    assert not is_remote_reference("ftp://example.com/cat.png")
