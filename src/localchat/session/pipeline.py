"""Single-flight generation with token fan-out and cooperative cancellation."""
from __future__ import annotations

import asyncio
import enum
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Protocol

from ..engines.base import GenerationRequest, ModelHandle
from ..errors import BackendGenerationError
from ..metrics.instrumentation import GenerationStats, Instrumentation
from .gateway import BackendGateway
from .state import SessionStateMachine

logger = logging.getLogger(__name__)

TokenSubscriber = Callable[[str], None]

_POLL_S = 0.05
_TOKEN = "token"
_END = "end"


class OutcomeKind(enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class GenerationOutcome:
    kind: OutcomeKind
    text: str = ""
    error: BaseException | None = None
    stats: GenerationStats = field(default_factory=GenerationStats)

    @classmethod
    def completed(cls, text: str, stats: GenerationStats | None = None) -> GenerationOutcome:
        return cls(OutcomeKind.COMPLETED, text, None, stats or GenerationStats())

    @classmethod
    def cancelled(cls, partial: str, stats: GenerationStats | None = None) -> GenerationOutcome:
        return cls(OutcomeKind.CANCELLED, partial, None, stats or GenerationStats())

    @classmethod
    def failed(cls, error: BaseException, partial: str = "", stats: GenerationStats | None = None) -> GenerationOutcome:
        return cls(OutcomeKind.FAILED, partial, error, stats or GenerationStats())

    @property
    def is_completed(self) -> bool:
        return self.kind is OutcomeKind.COMPLETED

    @property
    def is_cancelled(self) -> bool:
        return self.kind is OutcomeKind.CANCELLED

    @property
    def is_failed(self) -> bool:
        return self.kind is OutcomeKind.FAILED


class GenerationListener(Protocol):
    def on_start(self) -> None:
        ...

    def on_token(self, token: str) -> None:
        ...

    def on_outcome(self, outcome: GenerationOutcome) -> None:
        ...


class _NullListener:
    def on_start(self) -> None:
        pass

    def on_token(self, token: str) -> None:
        pass

    def on_outcome(self, outcome: GenerationOutcome) -> None:
        pass


class GenerationHandle:
    """Caller-side view of one accepted request."""

    def __init__(self, run: _GenerationRun) -> None:
        self._run = run

    @property
    def request(self) -> GenerationRequest:
        return self._run.request

    @property
    def text(self) -> str:
        return self._run.partial_text()

    def done(self) -> bool:
        return self._run.resolved.is_set()

    def cancel(self) -> bool:
        return self._run.cancel()

    def result(self, timeout: float | None = None) -> GenerationOutcome:
        if not self._run.resolved.wait(timeout):
            raise TimeoutError(f"Generation still running after {timeout}s")
        assert self._run.outcome is not None
        return self._run.outcome

    async def wait(self) -> GenerationOutcome:
        return await asyncio.to_thread(self.result)


class _GenerationRun:
    def __init__(
        self,
        gateway: BackendGateway,
        machine: SessionStateMachine,
        request: GenerationRequest,
        listener: GenerationListener,
        subscribers: Callable[[], list[TokenSubscriber]],
        buffer_size: int,
        cancel_grace_s: float,
        instrumentation: Instrumentation,
    ) -> None:
        self.request = request
        self._gateway = gateway
        self._machine = machine
        self._model: ModelHandle | None = None
        self._listener = listener
        self._subscribers = subscribers
        self._grace = cancel_grace_s
        self._instr = instrumentation
        self._channel: queue.Queue[tuple[str, str | None]] = queue.Queue(maxsize=max(1, buffer_size))
        self._lock = threading.Lock()
        self._cancelled = False
        self._settled = False
        self._inflight = 0
        self._pieces: list[str] = []
        self._result_text: str | None = None
        self._error: BackendGenerationError | None = None
        self._producer_exited = False
        self._release_on_exit = False
        self._producer = threading.Thread(target=self._produce, name="localchat-generate", daemon=True)
        self._dispatcher = threading.Thread(target=self._dispatch, name="localchat-dispatch", daemon=True)
        self.outcome: GenerationOutcome | None = None
        self.resolved = threading.Event()
        self.handle = GenerationHandle(self)

    def bind(self, model: ModelHandle) -> None:
        with self._lock:
            self._model = model

    def start(self) -> None:
        self._instr.start()
        self._producer.start()
        self._dispatcher.start()

    def partial_text(self) -> str:
        with self._lock:
            return "".join(self._pieces)

    def cancel(self) -> bool:
        with self._lock:
            if self._settled or self._cancelled:
                return False
            self._cancelled = True
            model = self._model
        assert model is not None
        logger.info("Cancelling generation on %s", model.path)
        self._gateway.request_cancel(model)
        return True

    # -- producer -----------------------------------------------------------

    def _emit(self, token: str) -> bool:
        with self._lock:
            if self._cancelled:
                return False
            self._inflight += 1
        try:
            self._channel.put((_TOKEN, token))
        finally:
            with self._lock:
                self._inflight -= 1
        return True

    def _produce(self) -> None:
        try:
            with self._lock:
                skip = self._cancelled
            if not skip:
                self._result_text = self._gateway.generate(self._model, self.request, self._emit)
        except BackendGenerationError as exc:
            self._error = exc
        except Exception as exc:
            error = BackendGenerationError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
            self._error = error
        finally:
            with self._lock:
                send_end = not self._cancelled
            if send_end:
                self._channel.put((_END, None))
            with self._lock:
                self._producer_exited = True
                release = self._release_on_exit
            if release:
                logger.info("Backend honoured cancellation late; releasing generation slot")
                self._machine.finish_generation()

    # -- dispatcher ---------------------------------------------------------

    def _deliver(self, token: str) -> None:
        with self._lock:
            self._pieces.append(token)
        self._instr.count_token()
        try:
            self._listener.on_token(token)
        except Exception:
            logger.exception("Generation listener failed on token")
        for callback in self._subscribers():
            try:
                callback(token)
            except Exception:
                logger.exception("Token subscriber failed")

    def _drain_nowait(self) -> None:
        while True:
            try:
                kind, payload = self._channel.get_nowait()
            except queue.Empty:
                return
            if kind == _TOKEN and payload is not None:
                self._deliver(payload)

    def _dispatch(self) -> None:
        while True:
            try:
                kind, payload = self._channel.get(timeout=_POLL_S)
            except queue.Empty:
                with self._lock:
                    drained = self._cancelled and self._inflight == 0
                    if drained:
                        self._settled = True
                if drained:
                    # nothing can be enqueued any more; flush what raced in
                    self._drain_nowait()
                    break
                continue
            if kind == _END:
                with self._lock:
                    self._settled = True
                break
            if payload is not None:
                self._deliver(payload)
        self._resolve()

    def _resolve(self) -> None:
        text = self.partial_text()
        with self._lock:
            cancelled = self._cancelled
        if cancelled:
            self._producer.join(self._grace)
        else:
            self._producer.join()
        stats = self._instr.finish()

        if cancelled:
            outcome = GenerationOutcome.cancelled(text, stats)
        elif self._error is not None:
            outcome = GenerationOutcome.failed(self._error, text, stats)
        else:
            outcome = GenerationOutcome.completed(self._result_text or text, stats)

        try:
            self._listener.on_outcome(outcome)
        except Exception:
            logger.exception("Generation listener failed on %s outcome", outcome.kind.value)

        with self._lock:
            deferred = not self._producer_exited
            self._release_on_exit = deferred
        if deferred:
            logger.warning(
                "Backend still running %.1fs after cancel; slot stays held until it returns", self._grace
            )
        elif outcome.is_failed:
            logger.error("Generation failed: %s", outcome.error)
            self._machine.fail_generation()
        else:
            self._machine.finish_generation()

        self.outcome = outcome
        self.resolved.set()
        logger.info(
            "Generation %s: %d tokens in %.2fs",
            outcome.kind.value,
            stats.token_count,
            stats.elapsed_s,
        )


class GenerationPipeline:
    def __init__(
        self,
        gateway: BackendGateway,
        machine: SessionStateMachine,
        *,
        buffer_size: int = 64,
        cancel_grace_s: float = 2.0,
        sampling_interval_ms: int = 0,
    ) -> None:
        self._gateway = gateway
        self._machine = machine
        self._buffer_size = buffer_size
        self._cancel_grace_s = cancel_grace_s
        self._sampling_interval_ms = sampling_interval_ms
        self._lock = threading.Lock()
        self._subscribers: list[TokenSubscriber] = []
        self._active: _GenerationRun | None = None

    def subscribe(self, callback: TokenSubscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def active(self) -> GenerationHandle | None:
        with self._lock:
            run = self._active
        if run is None or run.resolved.is_set():
            return None
        return run.handle

    def start(
        self,
        request: GenerationRequest,
        listener: GenerationListener | None = None,
        on_token: TokenSubscriber | None = None,
        *,
        buffer_size: int | None = None,
        cancel_grace_s: float | None = None,
        sampling_interval_ms: int | None = None,
    ) -> GenerationHandle:
        """Admit *request* and start streaming it.

        The run is registered as active before GENERATING is published, so a
        cancel() issued from a state subscriber or another thread at any point
        after admission reaches it. A run cancelled before its producer starts
        never calls the backend and resolves as cancelled with empty text.
        """
        listener = listener or _NullListener()
        extra = [on_token] if on_token is not None else []

        def subscribers() -> list[TokenSubscriber]:
            with self._lock:
                return extra + list(self._subscribers)

        run = _GenerationRun(
            self._gateway,
            self._machine,
            request,
            listener,
            subscribers,
            self._buffer_size if buffer_size is None else buffer_size,
            self._cancel_grace_s if cancel_grace_s is None else cancel_grace_s,
            Instrumentation(self._sampling_interval_ms if sampling_interval_ms is None else sampling_interval_ms),
        )
        def admit(model: ModelHandle) -> None:
            run.bind(model)
            with self._lock:
                self._active = run

        try:
            self._machine.begin_generation(admit)
        except Exception:
            self._forget(run)
            raise
        try:
            listener.on_start()
        except Exception:
            self._forget(run)
            self._machine.fail_generation()
            raise
        run.start()
        return run.handle

    def _forget(self, run: _GenerationRun) -> None:
        with self._lock:
            if self._active is run:
                self._active = None

    def cancel(self) -> bool:
        with self._lock:
            run = self._active
        if run is None:
            return False
        return run.cancel()
