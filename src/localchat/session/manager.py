"""Session facade: model lifecycle, generation and transcript in one object."""
from __future__ import annotations

import enum
import logging
import os
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable

from ..config import ConfigProvider, RootConfig, StaticConfigProvider
from ..engines.base import GenerationRequest, InferenceBackend, ModelInfo, describe_model
from ..errors import BackendLoadError, GenerationInProgress, ModelLoadInProgress, ModelNotFound, SessionError
from ..prompts import build_prompt
from ..speech import NullSpeechOutput, SpeechOutput
from ..transcript.reconciler import MessageSubscriber, TranscriptReconciler
from ..transcript.store import InMemoryTranscriptStore, Role, TranscriptMessage, TranscriptStore
from .gateway import BackendGateway
from .pipeline import GenerationHandle, GenerationOutcome, GenerationPipeline, TokenSubscriber
from .state import GenerationState, ModelState, SessionStateMachine

logger = logging.getLogger(__name__)


class LoadStatus(enum.Enum):
    LOADED = "loaded"
    ALREADY_LOADED = "already_loaded"


@dataclass(frozen=True)
class LoadResult:
    status: LoadStatus
    info: ModelInfo


class _ChatTurn:
    """Pipeline listener for one user turn."""

    def __init__(self, session: SessionManager, user_text: str, config: RootConfig) -> None:
        self._session = session
        self._user_text = user_text
        self._config = config
        self.user_message: TranscriptMessage | None = None
        self.placeholder: TranscriptMessage | None = None

    def on_start(self) -> None:
        reconciler = self._session._reconciler
        self.user_message = reconciler.store.append(Role.USER, self._user_text)
        self.placeholder = reconciler.begin()

    def on_token(self, token: str) -> None:
        self._session._reconciler.append_token(token)

    def on_outcome(self, outcome: GenerationOutcome) -> None:
        self._session._reconciler.finalize(outcome, keep_failed=self._config.chat.keep_failed_replies)
        speech = self._config.speech
        if outcome.is_completed and speech.enabled and speech.voice_output:
            try:
                self._session._speech.speak(outcome.text.strip())
            except Exception:
                logger.exception("Speech output failed")


class SessionManager:
    """The one public surface of the inference session.

    Construct one per process and pass it to whatever needs it. Model,
    sampling and chat settings are read from *config* on every load or
    generate call, so a file-backed provider picks up edited settings without
    a restart; a generation already running keeps the values it started with.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        store: TranscriptStore | None = None,
        config: ConfigProvider | RootConfig | None = None,
        speech: SpeechOutput | None = None,
    ) -> None:
        if config is None or isinstance(config, RootConfig):
            config = StaticConfigProvider(config)
        self._config = config
        cfg = config.current()
        self._machine = SessionStateMachine()
        self._gateway = BackendGateway(backend)
        self._pipeline = GenerationPipeline(
            self._gateway,
            self._machine,
            buffer_size=cfg.chat.token_buffer,
            cancel_grace_s=cfg.chat.cancel_grace_s,
            sampling_interval_ms=cfg.app.sampling_interval_ms,
        )
        self._reconciler = TranscriptReconciler(
            store if store is not None else InMemoryTranscriptStore(),
            keep_failed_replies=cfg.chat.keep_failed_replies,
        )
        self._speech = speech or NullSpeechOutput()
        self._load_lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> SessionManager:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # -- read-only state ----------------------------------------------------

    @property
    def config(self) -> RootConfig:
        return self._config.current()

    @property
    def model_state(self) -> ModelState:
        return self._machine.model.value

    @property
    def generation_state(self) -> GenerationState:
        return self._machine.generation.value

    @property
    def model_info(self) -> ModelInfo | None:
        return self._machine.info

    @property
    def streaming_message_id(self) -> int | None:
        return self._reconciler.streaming_message_id

    @property
    def active_generation(self) -> GenerationHandle | None:
        return self._pipeline.active

    @property
    def store(self) -> TranscriptStore:
        return self._reconciler.store

    def history(self) -> list[TranscriptMessage]:
        return self._reconciler.store.history()

    def clear_history(self) -> None:
        if self._machine.generation.value is not GenerationState.IDLE:
            raise GenerationInProgress()
        self._reconciler.store.clear()

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self._machine.wait_idle(timeout)

    # -- subscriptions ------------------------------------------------------

    def subscribe_model_state(self, callback: Callable[[ModelState], None]) -> Callable[[], None]:
        return self._machine.model.subscribe(callback)

    def subscribe_generation_state(self, callback: Callable[[GenerationState], None]) -> Callable[[], None]:
        return self._machine.generation.subscribe(callback)

    def subscribe_tokens(self, callback: TokenSubscriber) -> Callable[[], None]:
        return self._pipeline.subscribe(callback)

    def subscribe_messages(self, callback: MessageSubscriber) -> Callable[[], None]:
        return self._reconciler.subscribe(callback)

    # -- model lifecycle ----------------------------------------------------

    def load_model(self, path: str) -> LoadResult:
        if not self._load_lock.acquire(blocking=False):
            raise ModelLoadInProgress()
        try:
            return self._load_locked(path)
        finally:
            self._load_lock.release()

    def _load_locked(self, path: str) -> LoadResult:
        cfg = self._config.current()
        current = self._machine.info
        if self._machine.model.value is ModelState.LOADED and current is not None:
            if os.path.abspath(current.path) == os.path.abspath(path):
                logger.info("Model already loaded: %s", path)
                return LoadResult(LoadStatus.ALREADY_LOADED, current)
        if not path or not os.path.exists(path):
            logger.error("Model file not found: %s", path)
            raise ModelNotFound(path)

        if self._machine.model.value is ModelState.LOADED:
            logger.info("Unloading %s before loading %s", current.path if current else "?", path)
            self._release_current()

        self._machine.begin_load()
        try:
            handle = self._gateway.load_model(
                path,
                cfg.model.context_size,
                cfg.model.threads,
                cfg.model.use_gpu,
                compression=cfg.model.compression,
                layer_cache_dir=cfg.model.layer_cache_dir,
            )
        except SessionError as exc:
            logger.error("Error loading model: %s", exc)
            self._machine.fail_load()
            raise

        try:
            info = describe_model(path, cfg.model.context_size)
        except OSError as exc:
            self._gateway.unload_model(handle)
            self._machine.fail_load()
            raise BackendLoadError(path, str(exc)) from exc

        self._machine.finish_load(handle, info)
        logger.info("Model loaded successfully: %s (%s)", info.name, info.parameter_class)
        return LoadResult(LoadStatus.LOADED, info)

    def unload_model(self) -> None:
        if not self._load_lock.acquire(blocking=False):
            raise ModelLoadInProgress()
        try:
            self._release_current()
        finally:
            self._load_lock.release()

    def _release_current(self) -> None:
        while True:
            self._pipeline.cancel()
            self._machine.wait_idle()
            try:
                handle = self._machine.release_model()
            except GenerationInProgress:
                # a generate() slipped in between the wait and the release
                continue
            break
        if handle is not None:
            self._gateway.unload_model(handle)
            logger.info("Model unloaded: %s", handle.path)

    # -- generation ---------------------------------------------------------

    def _request(self, prompt: str, cfg: RootConfig, overrides: dict[str, Any]) -> GenerationRequest:
        params = asdict(cfg.sampling)
        unknown = set(overrides) - set(params)
        if unknown:
            raise TypeError(f"Unknown sampling parameters: {sorted(unknown)}")
        params.update({key: value for key, value in overrides.items() if value is not None})
        return GenerationRequest(prompt=prompt, **params)

    def generate(self, prompt: str, on_token: TokenSubscriber | None = None, **overrides: Any) -> GenerationHandle:
        """Start answering *prompt*; returns immediately.

        Raises ``NoModelLoaded`` or ``GenerationInProgress`` synchronously if
        the request cannot be accepted. Keyword overrides replace the
        configured sampling values for this request only.
        """
        text = prompt.strip()
        if not text:
            raise ValueError("prompt must not be empty")
        cfg = self._config.current()
        history = self._reconciler.store.recent(cfg.chat.history_limit)
        request = self._request(build_prompt(history, text, cfg.chat.system_prompt), cfg, overrides)
        return self._pipeline.start(
            request,
            _ChatTurn(self, text, cfg),
            on_token,
            buffer_size=cfg.chat.token_buffer,
            cancel_grace_s=cfg.chat.cancel_grace_s,
            sampling_interval_ms=cfg.app.sampling_interval_ms,
        )

    def cancel_generation(self) -> bool:
        return self._pipeline.cancel()

    # -- teardown -----------------------------------------------------------

    def close(self) -> None:
        with self._load_lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._release_current()
            finally:
                self._speech.stop()
        logger.info("Session closed")
