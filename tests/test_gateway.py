"""
Tests for localchat.session.gateway: error translation and resource release.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from localchat.engines.base import GenerationRequest, ModelHandle
from localchat.errors import BackendGenerationError, BackendLoadError, ModelNotFound
from localchat.session.gateway import BackendGateway

from .conftest import FakeBackend


def test_missing_path_raises_model_not_found():
    backend = FakeBackend()
    gateway = BackendGateway(backend)
    with pytest.raises(ModelNotFound) as excinfo:
        gateway.load_model("/no/such.gguf", 2048, 4, False)
    assert excinfo.value.path == "/no/such.gguf"
    assert backend.loaded == []


def test_load_passes_spec_and_options(model_file):
    backend = FakeBackend()
    gateway = BackendGateway(backend)
    handle = gateway.load_model(model_file, 4096, 8, True, compression="4bit")
    path, spec = backend.loaded[0]
    assert path == model_file
    assert (spec.context_size, spec.threads, spec.use_gpu) == (4096, 8, True)
    assert spec.options == {"compression": "4bit"}
    assert handle.path == model_file
    assert not handle.released


def test_native_load_failure_is_translated(model_file):
    gateway = BackendGateway(FakeBackend(fail_load=RuntimeError("bad magic")))
    with pytest.raises(BackendLoadError) as excinfo:
        gateway.load_model(model_file, 2048, 4, False)
    assert "bad magic" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_unload_is_idempotent(model_file):
    backend = FakeBackend()
    gateway = BackendGateway(backend)
    handle = gateway.load_model(model_file, 2048, 4, False)
    gateway.unload_model(handle)
    gateway.unload_model(handle)
    gateway.unload_model(None)
    assert backend.unloaded == [model_file]
    assert handle.released


def test_unload_never_raises(caplog):
    backend = MagicMock()
    backend.unload.side_effect = RuntimeError("driver gone")
    gateway = BackendGateway(backend)
    handle = ModelHandle(path="/m.gguf", resource=object())
    gateway.unload_model(handle)
    assert handle.released
    assert handle.resource is None
    assert "unload failed" in caplog.text


def test_generate_streams_and_returns_text(model_file):
    gateway = BackendGateway(FakeBackend())
    handle = gateway.load_model(model_file, 2048, 4, False)
    seen = []
    text = gateway.generate(handle, GenerationRequest(prompt="Hello"), seen.append)
    assert seen == ["Hi", " there", "!"]
    assert text == "Hi there!"


def test_generate_failure_is_translated(model_file):
    gateway = BackendGateway(FakeBackend(fail_at=1))
    handle = gateway.load_model(model_file, 2048, 4, False)
    with pytest.raises(BackendGenerationError, match="native failure"):
        gateway.generate(handle, GenerationRequest(prompt="Hello"), lambda _t: None)


def test_generate_on_released_handle_fails(model_file):
    gateway = BackendGateway(FakeBackend())
    handle = gateway.load_model(model_file, 2048, 4, False)
    gateway.unload_model(handle)
    with pytest.raises(BackendGenerationError):
        gateway.generate(handle, GenerationRequest(prompt="Hello"), lambda _t: None)


def test_request_cancel_swallows_backend_errors_and_skips_released():
    backend = MagicMock()
    backend.cancel.side_effect = RuntimeError("nope")
    gateway = BackendGateway(backend)
    handle = ModelHandle(path="/m.gguf", resource=object())
    gateway.request_cancel(handle)
    handle.released = True
    gateway.request_cancel(handle)
    assert backend.cancel.call_count == 1
