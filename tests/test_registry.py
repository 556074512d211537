from __future__ import annotations

import os

import pytest

from localchat.config import ModelSpec
from localchat.engines.base import describe_model, estimate_parameter_class, path_size
from localchat.registry import ModelRegistry, create_backend


@pytest.mark.parametrize(
    "name,expected",
    [
        ("tinyllama-1.1b-chat.Q4_K_M.gguf", "1.1B"),
        ("llama-2-7b-chat.Q4_0.gguf", "7B"),
        ("Mistral-7B-Instruct-v0.2.gguf", "7B"),
        ("phi-3-mini-4k-instruct.gguf", "Unknown"),
        ("qwen2.5-0.5b-instruct-q8_0.gguf", "0.5B"),
    ],
)
def test_estimate_parameter_class(name, expected):
    assert estimate_parameter_class(name) == expected


def test_describe_model(model_file):
    info = describe_model(model_file, 1024)
    assert info.name == os.path.basename(model_file)
    assert info.size_bytes == 1024
    assert info.context_size == 1024


def test_path_size_walks_directories(tmp_path):
    model_dir = tmp_path / "airllm-model"
    (model_dir / "layers").mkdir(parents=True)
    (model_dir / "config.json").write_bytes(b"x" * 10)
    (model_dir / "layers" / "0.safetensors").write_bytes(b"x" * 30)
    assert path_size(str(model_dir)) == 40


def test_scan_lists_gguf_newest_first(tmp_path):
    older = tmp_path / "older.gguf"
    newer = tmp_path / "newer.GGUF"
    older.write_bytes(b"a")
    newer.write_bytes(b"b")
    (tmp_path / "notes.txt").write_text("ignore me")
    os.utime(older, (1_000, 1_000))
    os.utime(newer, (2_000, 2_000))
    registry = ModelRegistry([], str(tmp_path))
    assert [m.key for m in registry.scan()] == ["newer", "older"]


def test_list_merges_configured_and_scanned(tmp_path):
    path = tmp_path / "tiny.gguf"
    path.write_bytes(b"a")
    (tmp_path / "other.gguf").write_bytes(b"b")
    configured = ModelSpec(key="tiny-chat", display_name="Tiny", local_path=str(path))
    registry = ModelRegistry([configured], str(tmp_path))
    assert [m.key for m in registry.list()] == ["tiny-chat", "other"]


def test_resolve_key_or_path(tmp_path):
    spec = ModelSpec(key="tiny", display_name="Tiny", local_path="/models/tiny.gguf")
    registry = ModelRegistry([spec], str(tmp_path / "missing"))
    assert registry.resolve("tiny") == "/models/tiny.gguf"
    assert registry.resolve("/elsewhere/model.gguf") == "/elsewhere/model.gguf"
    with pytest.raises(KeyError):
        registry.get("nope")


def test_create_backend_rejects_unknown_kind():
    with pytest.raises(ValueError, match="Unknown backend"):
        create_backend("onnx")
