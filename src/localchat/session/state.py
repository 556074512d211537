"""Model and generation lifecycle state machine."""
from __future__ import annotations

import enum
import logging
import threading
from typing import Callable, Generic, TypeVar

from ..engines.base import ModelHandle, ModelInfo
from ..errors import (
    GenerationInProgress,
    IllegalTransition,
    ModelLoadInProgress,
    NoModelLoaded,
)

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=enum.Enum)


class ModelState(enum.Enum):
    NO_MODEL = "no_model"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class GenerationState(enum.Enum):
    IDLE = "idle"
    GENERATING = "generating"
    ERROR = "error"


MODEL_TRANSITIONS: dict[ModelState, frozenset[ModelState]] = {
    ModelState.NO_MODEL: frozenset({ModelState.LOADING}),
    ModelState.LOADING: frozenset({ModelState.LOADED, ModelState.ERROR}),
    ModelState.LOADED: frozenset({ModelState.NO_MODEL, ModelState.ERROR}),
    ModelState.ERROR: frozenset({ModelState.LOADING, ModelState.NO_MODEL}),
}

GENERATION_TRANSITIONS: dict[GenerationState, frozenset[GenerationState]] = {
    GenerationState.IDLE: frozenset({GenerationState.GENERATING}),
    GenerationState.GENERATING: frozenset({GenerationState.IDLE, GenerationState.ERROR}),
    GenerationState.ERROR: frozenset({GenerationState.IDLE}),
}


class ObservableState(Generic[S]):
    """A state value that pushes every change to its subscribers, in order.

    Callbacks run on the thread performing the transition, with the state
    lock held. A callback that raises is logged and does not prevent delivery
    to the others. A callback must not transition the state it is observing
    (for example by starting a generation on IDLE); hand that work to another
    thread. Such a nested transition raises IllegalTransition.
    """

    def __init__(self, name: str, initial: S, transitions: dict[S, frozenset[S]]) -> None:
        self._name = name
        self._value = initial
        self._transitions = transitions
        self._subscribers: list[Callable[[S], None]] = []
        self._cond = threading.Condition(threading.RLock())
        self._delivering: int | None = None

    @property
    def value(self) -> S:
        with self._cond:
            return self._value

    def subscribe(self, callback: Callable[[S], None]) -> Callable[[], None]:
        with self._cond:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._cond:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def transition(self, new: S) -> None:
        # Held across delivery so concurrent transitions reach subscribers in order.
        with self._cond:
            if self._delivering == threading.get_ident():
                raise IllegalTransition(f"{self._name}: transition to {new.name} from inside a subscriber")
            old = self._value
            if new not in self._transitions[old]:
                raise IllegalTransition(f"{self._name}: {old.name} -> {new.name}")
            self._value = new
            self._cond.notify_all()
            logger.debug("%s: %s -> %s", self._name, old.name, new.name)
            self._delivering = threading.get_ident()
            try:
                for callback in list(self._subscribers):
                    try:
                        callback(new)
                    except Exception:
                        logger.exception("%s subscriber failed on %s", self._name, new.name)
            finally:
                self._delivering = None

    def wait_for(self, predicate: Callable[[S], bool], timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self._value), timeout=timeout)


class SessionStateMachine:
    """Owns the model handle and both lifecycle axes."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.model = ObservableState("model", ModelState.NO_MODEL, MODEL_TRANSITIONS)
        self.generation = ObservableState("generation", GenerationState.IDLE, GENERATION_TRANSITIONS)
        self._handle: ModelHandle | None = None
        self._info: ModelInfo | None = None

    @property
    def handle(self) -> ModelHandle | None:
        with self._lock:
            return self._handle

    @property
    def info(self) -> ModelInfo | None:
        with self._lock:
            return self._info

    # -- model axis ---------------------------------------------------------

    def begin_load(self) -> None:
        with self._lock:
            state = self.model.value
            if state is ModelState.LOADING:
                raise ModelLoadInProgress()
            if state is ModelState.LOADED:
                raise IllegalTransition("unload the current model before loading another")
            self.model.transition(ModelState.LOADING)

    def finish_load(self, handle: ModelHandle, info: ModelInfo) -> None:
        with self._lock:
            self._handle = handle
            self._info = info
            self.model.transition(ModelState.LOADED)

    def fail_load(self) -> None:
        with self._lock:
            self._handle = None
            self._info = None
            self.model.transition(ModelState.ERROR)

    def release_model(self) -> ModelHandle | None:
        """Detach the handle and move to NO_MODEL; the caller unloads it."""
        with self._lock:
            if self.generation.value is not GenerationState.IDLE:
                raise GenerationInProgress()
            handle = self._handle
            self._handle = None
            self._info = None
            if self.model.value in (ModelState.LOADED, ModelState.ERROR):
                self.model.transition(ModelState.NO_MODEL)
            return handle

    # -- generation axis ----------------------------------------------------

    def begin_generation(self, on_admit: Callable[[ModelHandle], None] | None = None) -> ModelHandle:
        """Claim the generation slot.

        *on_admit* runs after the checks pass and before subscribers hear
        about GENERATING, so whatever it registers is visible to them.
        """
        with self._lock:
            if self.model.value is not ModelState.LOADED or self._handle is None:
                raise NoModelLoaded()
            if self.generation.value is not GenerationState.IDLE:
                raise GenerationInProgress()
            if on_admit is not None:
                on_admit(self._handle)
            self.generation.transition(GenerationState.GENERATING)
            return self._handle

    def finish_generation(self) -> None:
        with self._lock:
            self.generation.transition(GenerationState.IDLE)

    def fail_generation(self) -> None:
        with self._lock:
            self.generation.transition(GenerationState.ERROR)
            self.generation.transition(GenerationState.IDLE)

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.generation.wait_for(lambda s: s is GenerationState.IDLE, timeout=timeout)
