"""Configuration loading and dataclasses."""
from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

import yaml


DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant. Provide accurate and helpful responses."


@dataclass
class AppConfig:
    title: str = "LocalChat"
    backend: str = "llama_cpp"
    models_dir: str = "models"
    transcript_path: str = "chat_history.sqlite3"
    log_level: str = "INFO"
    sampling_interval_ms: int = 50


@dataclass
class ModelSettings:
    context_size: int = 2048
    threads: int = 4
    use_gpu: bool = False
    compression: str | None = None
    layer_cache_dir: str = "./cache/airllm_layers"


@dataclass
class SamplingDefaults:
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 512
    repeat_penalty: float = 1.1


@dataclass
class ChatSettings:
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    history_limit: int = 20
    token_buffer: int = 64
    cancel_grace_s: float = 2.0
    keep_failed_replies: bool = True


@dataclass
class SpeechSettings:
    enabled: bool = True
    voice_output: bool = False
    command: list[str] = field(default_factory=lambda: ["espeak"])
    voice: str = "default"
    rate: float = 1.0
    volume: float = 1.0


@dataclass
class ModelSpec:
    key: str
    display_name: str
    local_path: str


@dataclass
class RootConfig:
    app: AppConfig = field(default_factory=AppConfig)
    model: ModelSettings = field(default_factory=ModelSettings)
    sampling: SamplingDefaults = field(default_factory=SamplingDefaults)
    chat: ChatSettings = field(default_factory=ChatSettings)
    speech: SpeechSettings = field(default_factory=SpeechSettings)
    models: list[ModelSpec] = field(default_factory=list)


def _get(data: dict[str, Any], key: str, default: Any) -> Any:
    return data.get(key, default) if isinstance(data, dict) else default


def parse_config(raw: dict[str, Any]) -> RootConfig:
    app_raw = _get(raw, "app", {})
    model_raw = _get(raw, "model", {})
    sampling_raw = _get(raw, "sampling", {})
    chat_raw = _get(raw, "chat", {})
    speech_raw = _get(raw, "speech", {})
    models_raw = _get(raw, "models", [])

    app = AppConfig(
        title=_get(app_raw, "title", AppConfig.title),
        backend=str(_get(app_raw, "backend", AppConfig.backend)),
        models_dir=str(_get(app_raw, "models_dir", AppConfig.models_dir)),
        transcript_path=str(_get(app_raw, "transcript_path", AppConfig.transcript_path) or ""),
        log_level=str(_get(app_raw, "log_level", AppConfig.log_level)).upper(),
        sampling_interval_ms=int(_get(app_raw, "sampling_interval_ms", AppConfig.sampling_interval_ms)),
    )

    model = ModelSettings(
        context_size=int(_get(model_raw, "context_size", ModelSettings.context_size)),
        threads=int(_get(model_raw, "threads", ModelSettings.threads)),
        use_gpu=bool(_get(model_raw, "use_gpu", ModelSettings.use_gpu)),
        compression=_get(model_raw, "compression", ModelSettings.compression),
        layer_cache_dir=str(_get(model_raw, "layer_cache_dir", ModelSettings.layer_cache_dir)),
    )

    sampling = SamplingDefaults(
        temperature=float(_get(sampling_raw, "temperature", SamplingDefaults.temperature)),
        top_p=float(_get(sampling_raw, "top_p", SamplingDefaults.top_p)),
        top_k=int(_get(sampling_raw, "top_k", SamplingDefaults.top_k)),
        max_tokens=int(_get(sampling_raw, "max_tokens", SamplingDefaults.max_tokens)),
        repeat_penalty=float(_get(sampling_raw, "repeat_penalty", SamplingDefaults.repeat_penalty)),
    )

    chat = ChatSettings(
        system_prompt=str(_get(chat_raw, "system_prompt", ChatSettings.system_prompt)),
        history_limit=int(_get(chat_raw, "history_limit", ChatSettings.history_limit)),
        token_buffer=int(_get(chat_raw, "token_buffer", ChatSettings.token_buffer)),
        cancel_grace_s=float(_get(chat_raw, "cancel_grace_s", ChatSettings.cancel_grace_s)),
        keep_failed_replies=bool(_get(chat_raw, "keep_failed_replies", ChatSettings.keep_failed_replies)),
    )

    command = _get(speech_raw, "command", SpeechSettings().command)
    if isinstance(command, str):
        command = command.split()
    speech = SpeechSettings(
        enabled=bool(_get(speech_raw, "enabled", SpeechSettings.enabled)),
        voice_output=bool(_get(speech_raw, "voice_output", SpeechSettings.voice_output)),
        command=[str(part) for part in command],
        voice=str(_get(speech_raw, "voice", SpeechSettings.voice)),
        rate=float(_get(speech_raw, "rate", SpeechSettings.rate)),
        volume=float(_get(speech_raw, "volume", SpeechSettings.volume)),
    )

    models: list[ModelSpec] = []
    if isinstance(models_raw, list):
        for item in models_raw:
            local_path = str(_get(item, "local_path", ""))
            key = str(_get(item, "key", "") or os.path.basename(local_path))
            models.append(
                ModelSpec(
                    key=key,
                    display_name=str(_get(item, "display_name", "") or key),
                    local_path=local_path,
                )
            )

    return RootConfig(
        app=app,
        model=model,
        sampling=sampling,
        chat=chat,
        speech=speech,
        models=models,
    )


def load_config(path: str) -> RootConfig:
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    return parse_config(raw)


def load_root_config(path: str | None) -> RootConfig:
    if not path or not os.path.exists(path):
        return RootConfig()
    return load_config(path)


class ConfigProvider(Protocol):
    def current(self) -> RootConfig:
        ...


class StaticConfigProvider:
    def __init__(self, config: RootConfig | None = None) -> None:
        self._config = config or RootConfig()

    def current(self) -> RootConfig:
        return self._config


class FileConfigProvider:
    """Serves the YAML file at *path*, re-reading it when its mtime changes."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._mtime: float | None = None
        self._config = RootConfig()

    def current(self) -> RootConfig:
        try:
            mtime = os.path.getmtime(self._path)
        except OSError:
            return self._config
        with self._lock:
            if mtime != self._mtime:
                self._config = load_config(self._path)
                self._mtime = mtime
            return self._config
