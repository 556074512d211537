from __future__ import annotations

import io

import pytest

from localchat.config import RootConfig
from localchat import main as cli
from localchat.main import _run_turn, apply_overrides, chat_loop, handle_command, open_store, parse_args
from localchat.registry import ModelRegistry
from localchat.session.manager import SessionManager
from localchat.session.state import GenerationState, ModelState
from localchat.transcript.store import InMemoryTranscriptStore, SqliteTranscriptStore

from .conftest import FakeBackend


@pytest.fixture
def registry(tmp_path, model_file):
    return ModelRegistry([], str(tmp_path))


def test_parse_args_and_overrides():
    args = parse_args(["--backend", "airllm", "--temperature", "0.2", "--gpu", "--transcript", ""])
    cfg = apply_overrides(RootConfig(), args)
    assert cfg.app.backend == "airllm"
    assert cfg.sampling.temperature == 0.2
    assert cfg.model.use_gpu is True
    assert cfg.app.transcript_path == ""
    assert cfg.sampling.top_p == 0.9


def test_open_store_picks_backend(tmp_path):
    cfg = RootConfig()
    cfg.app.transcript_path = ""
    assert isinstance(open_store(cfg), InMemoryTranscriptStore)
    cfg.app.transcript_path = str(tmp_path / "chat.sqlite3")
    store = open_store(cfg)
    assert isinstance(store, SqliteTranscriptStore)
    store.close()


def test_load_info_unload_commands(session, registry):
    out = io.StringIO()
    assert handle_command(session, registry, "/load tinyllama-1.1b-chat.Q4_K_M", out)
    assert session.model_state is ModelState.LOADED
    assert handle_command(session, registry, "/load tinyllama-1.1b-chat.Q4_K_M", out)
    assert handle_command(session, registry, "/info", out)
    assert handle_command(session, registry, "/unload", out)
    text = out.getvalue()
    assert "Loaded: tinyllama-1.1b-chat.Q4_K_M.gguf" in text
    assert "Already loaded: tinyllama-1.1b-chat.Q4_K_M.gguf" in text
    assert "params: 1.1B" in text
    assert "Model unloaded" in text


def test_models_history_clear_commands(loaded_session, registry):
    out = io.StringIO()
    handle_command(loaded_session, registry, "/models", out)
    _run_turn(loaded_session, "Hello", out)
    handle_command(loaded_session, registry, "/history", out)
    handle_command(loaded_session, registry, "/clear", out)
    text = out.getvalue()
    assert "tinyllama-1.1b-chat.Q4_K_M\t" in text
    assert "Hi there!\n[3 tokens" in text
    assert "USER [" in text
    assert "ASSISTANT [" in text
    assert loaded_session.history() == []


def test_quit_and_unknown_commands(session, registry):
    out = io.StringIO()
    assert handle_command(session, registry, "/quit", out) is False
    assert handle_command(session, registry, "/bogus", out) is True
    assert "Unknown command /bogus" in out.getvalue()


def test_chat_loop_reports_session_errors(config, registry):
    out = io.StringIO()
    with SessionManager(FakeBackend(), None, config) as session:
        chat_loop(session, registry, io.StringIO("Hello\n/load /no/such.gguf\n/quit\n"), out)
    text = out.getvalue()
    assert "[error] No model loaded" in text
    assert "[error] Model file not found: /no/such.gguf" in text


def test_chat_loop_reports_invalid_sampling(config, registry):
    config.sampling.temperature = 0.0
    out = io.StringIO()
    with SessionManager(FakeBackend(), None, config) as session:
        chat_loop(session, registry, io.StringIO("/load tinyllama-1.1b-chat.Q4_K_M\nHello\n/quit\n"), out)
        assert session.generation_state is GenerationState.IDLE
    assert "[error] temperature must be in (0, 2], got 0.0" in out.getvalue()


class ClosingStore(SqliteTranscriptStore):
    closed = False

    def close(self):
        self.closed = True
        super().close()


def test_main_closes_store_when_loop_fails(tmp_path, monkeypatch):
    store = ClosingStore(tmp_path / "chat.sqlite3")

    def broken_loop(*_args):
        raise RuntimeError("terminal went away")

    monkeypatch.setattr(cli, "open_store", lambda _cfg: store)
    monkeypatch.setattr(cli, "create_backend", lambda _kind: FakeBackend())
    monkeypatch.setattr(cli, "chat_loop", broken_loop)

    with pytest.raises(RuntimeError):
        cli.main(["--config", str(tmp_path / "absent.yaml"), "--transcript", str(tmp_path / "chat.sqlite3")])
    assert store.closed
