"""AirLLM backend for Hugging Face model directories."""
from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import torch
from airllm import AutoModel
from transformers import StoppingCriteria, StoppingCriteriaList
from transformers.generation.streamers import BaseStreamer

from .base import GenerationRequest, LoadSpec, TokenCallback


def _ensure_safetensors_index(model_path: str) -> None:
    index_path = Path(model_path) / "model.safetensors.index.json"
    if index_path.exists():
        return
    st_path = Path(model_path) / "model.safetensors"
    if not st_path.exists():
        return
    from safetensors import safe_open

    with safe_open(str(st_path), framework="pt") as f:
        weight_map = {key: st_path.name for key in f.keys()}
    data = {
        "metadata": {"total_size": os.path.getsize(st_path)},
        "weight_map": weight_map,
    }
    with open(index_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle)


@dataclass
class _LoadedAirLLM:
    model: Any
    tokenizer: Any
    device: torch.device
    max_context: int
    cancel: threading.Event = field(default_factory=threading.Event)


class _CancelCriteria(StoppingCriteria):
    def __init__(self, cancel: threading.Event) -> None:
        self._cancel = cancel

    def __call__(self, input_ids, scores, **kwargs):
        return torch.full(
            (input_ids.shape[0],), self._cancel.is_set(), dtype=torch.bool, device=input_ids.device
        )


class _CallbackStreamer(BaseStreamer):
    """Decodes the growing id sequence and forwards only the new text."""

    def __init__(self, tokenizer: Any, on_token: TokenCallback, cancel: threading.Event) -> None:
        self._tokenizer = tokenizer
        self._on_token = on_token
        self._cancel = cancel
        self._ids: list[int] = []
        self._emitted = ""
        self._prompt_seen = False
        self.pieces: list[str] = []

    def put(self, value) -> None:
        if not self._prompt_seen:
            self._prompt_seen = True
            return
        if value.ndim > 1:
            value = value[0]
        self._ids.extend(int(v) for v in value.tolist())
        text = self._tokenizer.decode(self._ids, skip_special_tokens=True)
        # hold back incomplete multi-byte sequences
        if text.endswith("�"):
            return
        delta = text[len(self._emitted):]
        if not delta:
            return
        self._emitted = text
        self.pieces.append(delta)
        if self._on_token(delta) is False:
            self._cancel.set()

    def end(self) -> None:
        pass


class AirLLMBackend:
    def load(self, model_path: str, spec: LoadSpec) -> _LoadedAirLLM:
        if spec.use_gpu and torch.cuda.is_available():
            device = torch.device("cuda:0")
        else:
            device = torch.device("cpu")

        if os.path.isdir(model_path):
            _ensure_safetensors_index(model_path)

        layer_cache_dir = spec.options.get("layer_cache_dir") or ""
        if layer_cache_dir:
            os.makedirs(layer_cache_dir, exist_ok=True)

        model = AutoModel.from_pretrained(
            model_path,
            layer_shards_saving_path=layer_cache_dir or None,
            compression=spec.options.get("compression"),
        )
        tokenizer = getattr(model, "tokenizer", None)
        if tokenizer is None:
            raise RuntimeError("Model tokenizer not available")
        return _LoadedAirLLM(model=model, tokenizer=tokenizer, device=device, max_context=spec.context_size)

    def unload(self, resource: _LoadedAirLLM) -> None:
        resource.cancel.set()
        resource.model = None
        resource.tokenizer = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def cancel(self, resource: _LoadedAirLLM) -> None:
        resource.cancel.set()

    def generate(self, resource: _LoadedAirLLM, request: GenerationRequest, on_token: TokenCallback) -> str:
        if resource.model is None or resource.tokenizer is None:
            raise RuntimeError("Engine not loaded")
        resource.cancel.clear()

        inputs = resource.tokenizer(
            request.prompt,
            return_tensors="pt",
            truncation=True,
            max_length=resource.max_context,
        )
        input_ids = inputs["input_ids"].to(resource.device)
        attention_mask = inputs.get("attention_mask")
        if attention_mask is not None:
            attention_mask = attention_mask.to(resource.device)

        streamer = _CallbackStreamer(resource.tokenizer, on_token, resource.cancel)
        resource.model.generate(
            input_ids=input_ids,
            attention_mask=attention_mask,
            max_new_tokens=request.max_tokens,
            temperature=request.temperature,
            top_p=request.top_p,
            top_k=request.top_k,
            repetition_penalty=request.repeat_penalty,
            do_sample=True,
            use_cache=False,
            streamer=streamer,
            stopping_criteria=StoppingCriteriaList([_CancelCriteria(resource.cancel)]),
        )
        return "".join(streamer.pieces)
