"""Maps streamed generation output onto the transcript store."""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable

from ..session.pipeline import GenerationOutcome, OutcomeKind
from .store import Role, TranscriptMessage, TranscriptStore

logger = logging.getLogger(__name__)

MessageSubscriber = Callable[[TranscriptMessage], None]


class TranscriptReconciler:
    """Owns the placeholder assistant message of the active generation.

    Tokens only touch an in-memory copy that is republished to subscribers;
    the store is written once when the placeholder is created and once at the
    terminal outcome.
    """

    def __init__(self, store: TranscriptStore, *, keep_failed_replies: bool = True) -> None:
        self._store = store
        self.keep_failed_replies = keep_failed_replies
        self._lock = threading.Lock()
        self._subscribers: list[MessageSubscriber] = []
        self._live: TranscriptMessage | None = None
        self._pieces: list[str] = []

    @property
    def store(self) -> TranscriptStore:
        return self._store

    @property
    def streaming_message_id(self) -> int | None:
        with self._lock:
            return None if self._live is None else self._live.id

    def subscribe(self, callback: MessageSubscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, message: TranscriptMessage) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(message)
            except Exception:
                logger.exception("Message subscriber failed")

    def begin(self) -> TranscriptMessage:
        with self._lock:
            if self._live is not None:
                raise RuntimeError(f"Message {self._live.id} is still streaming")
        placeholder = self._store.append(Role.ASSISTANT, "")
        with self._lock:
            self._live = placeholder
            self._pieces = []
        self._publish(placeholder)
        return placeholder

    def append_token(self, token: str) -> None:
        with self._lock:
            if self._live is None:
                return
            self._pieces.append(token)
            self._live = replace(self._live, content="".join(self._pieces))
            message = self._live
        self._publish(message)

    def finalize(self, outcome: GenerationOutcome, *, keep_failed: bool | None = None) -> TranscriptMessage | None:
        with self._lock:
            live = self._live
            partial = "".join(self._pieces)
            self._live = None
            self._pieces = []
        if live is None:
            return None

        if outcome.kind is OutcomeKind.COMPLETED:
            content = outcome.text.strip()
        elif outcome.kind is OutcomeKind.CANCELLED:
            content = outcome.text
        else:
            if not (self.keep_failed_replies if keep_failed is None else keep_failed):
                self._store.delete(live.id)
                logger.info("Discarded failed reply %d", live.id)
                return None
            content = outcome.text or partial

        message = self._store.update(live.id, content)
        self._publish(message)
        return message
