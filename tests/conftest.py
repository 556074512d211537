"""
Shared fixtures and a scripted fake backend for the LocalChat test suite.

The real backends need model weights and native libraries, so every test
drives the session through FakeBackend, which emits a fixed token script and
can pause, fail or ignore cancellation on request.
"""

from __future__ import annotations

import threading
import time

import pytest

from localchat.config import RootConfig
from localchat.engines.base import GenerationRequest, LoadSpec
from localchat.session.manager import SessionManager
from localchat.transcript.store import InMemoryTranscriptStore

# ---------------------------------------------------------------------------
# Fake backend
# ---------------------------------------------------------------------------


class FakeResource:
    def __init__(self, path: str) -> None:
        self.path = path
        self.cancel = threading.Event()
        self.unloaded = False


class FakeBackend:
    """
    Scripted stand-in for a native backend.

    Args:
        tokens: fragments emitted in order by every generate() call.
        fail_load: exception raised from load().
        fail_at: index at which generate() raises (len(tokens) = after the last).
        pause_after: number of tokens after which generate() blocks until cancelled
            (0 = before the first token).
        token_delay: sleep between tokens.
        ignore_cancel: keep producing after cancel() (misbehaving backend).
    """

    def __init__(
        self,
        tokens=("Hi", " there", "!"),
        *,
        fail_load=None,
        fail_at=None,
        pause_after=None,
        pause_s=5.0,
        token_delay=0.0,
        ignore_cancel=False,
    ):
        self.tokens = list(tokens)
        self.fail_load = fail_load
        self.fail_at = fail_at
        self.pause_after = pause_after
        self.pause_s = pause_s
        self.token_delay = token_delay
        self.ignore_cancel = ignore_cancel
        self.loaded: list[tuple[str, LoadSpec]] = []
        self.unloaded: list[str] = []
        self.requests: list[GenerationRequest] = []
        self.cancel_calls = 0
        self.generating = threading.Event()
        self.max_concurrent = 0
        self._active = 0
        self._lock = threading.Lock()

    def load(self, model_path, spec):
        if self.fail_load is not None:
            raise self.fail_load
        self.loaded.append((model_path, spec))
        return FakeResource(model_path)

    def unload(self, resource):
        resource.unloaded = True
        self.unloaded.append(resource.path)

    def cancel(self, resource):
        self.cancel_calls += 1
        resource.cancel.set()

    def _pause(self, resource):
        if self.ignore_cancel:
            time.sleep(self.pause_s)
        else:
            resource.cancel.wait(self.pause_s)

    def generate(self, resource, request, on_token):
        with self._lock:
            self._active += 1
            self.max_concurrent = max(self.max_concurrent, self._active)
        try:
            resource.cancel.clear()
            self.requests.append(request)
            self.generating.set()
            emitted = []
            if self.pause_after == 0:
                self._pause(resource)
            for i, token in enumerate(self.tokens):
                if self.fail_at == i:
                    raise RuntimeError("native failure")
                if resource.cancel.is_set() and not self.ignore_cancel:
                    break
                if on_token(token) is False and not self.ignore_cancel:
                    break
                emitted.append(token)
                if self.pause_after == i + 1:
                    self._pause(resource)
                elif self.token_delay:
                    time.sleep(self.token_delay)
            if self.fail_at == len(self.tokens):
                raise RuntimeError("native failure")
            return "".join(emitted)
        finally:
            with self._lock:
                self._active -= 1


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def wait_until(predicate, timeout=2.0, interval=0.005):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class TokenRecorder:
    """Token subscriber that records fragments and signals each arrival."""

    def __init__(self):
        self.tokens: list[str] = []
        self.first = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, token):
        with self._lock:
            self.tokens.append(token)
        self.first.set()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "tinyllama-1.1b-chat.Q4_K_M.gguf"
    path.write_bytes(b"GGUF" + b"\0" * 1020)
    return str(path)


@pytest.fixture
def other_model_file(tmp_path):
    path = tmp_path / "llama-2-7b-chat.Q4_0.gguf"
    path.write_bytes(b"GGUF" + b"\0" * 2044)
    return str(path)


@pytest.fixture
def config():
    cfg = RootConfig()
    cfg.app.sampling_interval_ms = 0
    cfg.chat.token_buffer = 4
    cfg.chat.cancel_grace_s = 1.0
    return cfg


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def store():
    return InMemoryTranscriptStore()


@pytest.fixture
def session(backend, store, config):
    manager = SessionManager(backend, store, config)
    yield manager
    manager.close()


@pytest.fixture
def loaded_session(session, model_file):
    session.load_model(model_file)
    return session
