"""llama.cpp backend for GGUF model files."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from llama_cpp import Llama

from .base import GenerationRequest, LoadSpec, TokenCallback


STOP_SEQUENCES = ["\nUser:", "\nSystem:"]


@dataclass
class _LoadedLlama:
    model: Llama
    cancel: threading.Event = field(default_factory=threading.Event)


class LlamaCppBackend:
    def load(self, model_path: str, spec: LoadSpec) -> _LoadedLlama:
        model = Llama(
            model_path=model_path,
            n_ctx=spec.context_size,
            n_threads=spec.threads,
            n_gpu_layers=-1 if spec.use_gpu else 0,
            verbose=False,
        )
        return _LoadedLlama(model=model)

    def unload(self, resource: _LoadedLlama) -> None:
        resource.cancel.set()
        close = getattr(resource.model, "close", None)
        if callable(close):
            close()

    def cancel(self, resource: _LoadedLlama) -> None:
        resource.cancel.set()

    def generate(self, resource: _LoadedLlama, request: GenerationRequest, on_token: TokenCallback) -> str:
        resource.cancel.clear()
        pieces: list[str] = []
        stream: Any = resource.model.create_completion(
            request.prompt,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            top_p=request.top_p,
            top_k=request.top_k,
            repeat_penalty=request.repeat_penalty,
            stop=STOP_SEQUENCES,
            stream=True,
        )
        try:
            for chunk in stream:
                if resource.cancel.is_set():
                    break
                text = chunk["choices"][0].get("text") or ""
                if not text:
                    continue
                pieces.append(text)
                if on_token(text) is False:
                    break
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()
        return "".join(pieces)
