"""Model library and backend lookup."""
from __future__ import annotations

import importlib
import os

from .config import ModelSpec
from .engines.base import InferenceBackend


BACKENDS: dict[str, tuple[str, str]] = {
    "llama_cpp": ("localchat.engines.llama_cpp_engine", "LlamaCppBackend"),
    "airllm": ("localchat.engines.airllm_engine", "AirLLMBackend"),
}

MODEL_SUFFIXES = (".gguf",)


def create_backend(kind: str) -> InferenceBackend:
    try:
        module_name, class_name = BACKENDS[kind]
    except KeyError:
        raise ValueError(f"Unknown backend {kind!r}; choose one of {sorted(BACKENDS)}") from None
    module = importlib.import_module(module_name)
    return getattr(module, class_name)()


class ModelRegistry:
    def __init__(self, models: list[ModelSpec], models_dir: str | None = None):
        self._models = models
        self._models_dir = models_dir

    def scan(self) -> list[ModelSpec]:
        if not self._models_dir or not os.path.isdir(self._models_dir):
            return []
        found: list[tuple[float, ModelSpec]] = []
        for entry in os.scandir(self._models_dir):
            if not entry.is_file() or not entry.name.lower().endswith(MODEL_SUFFIXES):
                continue
            key = os.path.splitext(entry.name)[0]
            found.append((entry.stat().st_mtime, ModelSpec(key=key, display_name=entry.name, local_path=entry.path)))
        found.sort(key=lambda item: item[0], reverse=True)
        return [spec for _mtime, spec in found]

    def list(self) -> list[ModelSpec]:
        models = list(self._models)
        known = {os.path.abspath(m.local_path) for m in models}
        for spec in self.scan():
            if os.path.abspath(spec.local_path) not in known:
                models.append(spec)
        return models

    def get(self, key: str) -> ModelSpec:
        for model in self.list():
            if model.key == key:
                return model
        raise KeyError(f"Model not found: {key}")

    def resolve(self, key_or_path: str) -> str:
        """Map a registry key to its path; anything else is taken as a path."""
        try:
            return self.get(key_or_path).local_path
        except KeyError:
            return key_or_path
