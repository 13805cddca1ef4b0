import pytest
import torch

from rmbg_service import model_loader
from rmbg_service.errors import ModelLoadError
from rmbg_service.model_loader import load_model_bundle, select_device


class _FakeModel:
    def __init__(self):
        self.device = None
        self.eval_called = False

    def to(self, device):
        self.device = device
        return self

    def eval(self):
        self.eval_called = True
        return self


def test_explicit_device_wins():
    assert select_device("cpu") == torch.device("cpu")


def test_loads_from_hub_with_remote_code(monkeypatch, settings):
    fake = _FakeModel()
    seen = {}

    def from_pretrained(model_id, **kwargs):
        seen["model_id"] = model_id
        seen.update(kwargs)
        return fake

    monkeypatch.setattr(model_loader.AutoModelForImageSegmentation, "from_pretrained", from_pretrained)
    settings.model_revision = "abc123"

    bundle = load_model_bundle(settings)

    assert bundle.model is fake
    assert fake.eval_called
    assert fake.device == torch.device("cpu")
    assert bundle.preprocessor.size == settings.input_size
    assert seen["model_id"] == "briaai/RMBG-1.4"
    assert seen["trust_remote_code"] is True
    assert seen["revision"] == "abc123"
    assert "cache_dir" not in seen


def test_hub_failure_becomes_model_load_error(monkeypatch, settings):
    def from_pretrained(model_id, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(model_loader.AutoModelForImageSegmentation, "from_pretrained", from_pretrained)

    with pytest.raises(ModelLoadError, match="connection refused"):
        load_model_bundle(settings)
