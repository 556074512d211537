"""Backend protocol and dataclasses."""
from __future__ import annotations

import itertools
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol


TokenCallback = Callable[[str], "bool | None"]

_handle_ids = itertools.count(1)


@dataclass
class LoadSpec:
    context_size: int = 2048
    threads: int = 4
    use_gpu: bool = False
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 512
    repeat_penalty: float = 1.1

    def __post_init__(self) -> None:
        if not 0.0 < self.temperature <= 2.0:
            raise ValueError(f"temperature must be in (0, 2], got {self.temperature}")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.top_k < 0:
            raise ValueError(f"top_k must be >= 0, got {self.top_k}")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be > 0, got {self.max_tokens}")
        if self.repeat_penalty <= 0:
            raise ValueError(f"repeat_penalty must be > 0, got {self.repeat_penalty}")


@dataclass(eq=False)
class ModelHandle:
    """Ownership token for a model living inside a backend."""

    path: str
    resource: Any
    id: int = field(default_factory=lambda: next(_handle_ids))
    released: bool = False


@dataclass(frozen=True)
class ModelInfo:
    name: str
    path: str
    context_size: int
    parameter_class: str
    size_bytes: int


_PARAMS_RE = re.compile(r"(?<![\d.])(\d+(?:\.\d+)?)[bB](?![a-zA-Z])")


def estimate_parameter_class(file_name: str) -> str:
    match = _PARAMS_RE.search(file_name)
    if match is None:
        return "Unknown"
    return f"{match.group(1)}B"


def path_size(path: str) -> int:
    if os.path.isdir(path):
        total = 0
        for root, _dirs, files in os.walk(path):
            for name in files:
                total += os.path.getsize(os.path.join(root, name))
        return total
    return os.path.getsize(path)


def describe_model(path: str, context_size: int) -> ModelInfo:
    name = os.path.basename(os.path.normpath(path))
    return ModelInfo(
        name=name,
        path=path,
        context_size=context_size,
        parameter_class=estimate_parameter_class(name),
        size_bytes=path_size(path),
    )


class InferenceBackend(Protocol):
    def load(self, model_path: str, spec: LoadSpec) -> Any:
        ...

    def unload(self, resource: Any) -> None:
        ...

    def generate(self, resource: Any, request: GenerationRequest, on_token: TokenCallback) -> str:
        """Block until done, calling *on_token* per fragment; stop early if it returns False."""
        ...

    def cancel(self, resource: Any) -> None:
        ...
