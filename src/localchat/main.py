"""LocalChat command-line entrypoint."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import TextIO

from .config import FileConfigProvider, RootConfig, StaticConfigProvider, load_root_config
from .engines.base import path_size
from .errors import SessionError
from .registry import ModelRegistry, create_backend
from .session.manager import LoadStatus, SessionManager
from .speech import CommandSpeechOutput
from .transcript.store import InMemoryTranscriptStore, SqliteTranscriptStore, TranscriptStore

HELP_TEXT = """Commands
/load <path|key>   Load a model file (unloads the current one)
/unload            Unload the current model
/models            List known model files
/info              Show the loaded model
/history           Print the transcript
/clear             Delete the transcript
/quit              Exit
Ctrl-C while a reply is streaming cancels it.
"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat with a local language model")
    parser.add_argument("--config", default="configs/localchat.yaml")
    parser.add_argument("--model", help="model path or registry key to load at start")
    parser.add_argument("--backend", choices=["llama_cpp", "airllm"])
    parser.add_argument("--transcript", help="sqlite transcript path ('' for in-memory)")
    parser.add_argument("--models-dir")
    parser.add_argument("--temperature", type=float)
    parser.add_argument("--top-p", type=float)
    parser.add_argument("--top-k", type=int)
    parser.add_argument("--max-tokens", type=int)
    parser.add_argument("--context-size", type=int)
    parser.add_argument("--threads", type=int)
    parser.add_argument("--gpu", action="store_true")
    parser.add_argument("--voice", action="store_true", help="speak completed replies")
    parser.add_argument("--log-level")
    return parser.parse_args(argv)


def apply_overrides(cfg: RootConfig, args: argparse.Namespace) -> RootConfig:
    if args.backend:
        cfg.app.backend = args.backend
    if args.transcript is not None:
        cfg.app.transcript_path = args.transcript
    if args.models_dir:
        cfg.app.models_dir = args.models_dir
    if args.log_level:
        cfg.app.log_level = args.log_level.upper()
    if args.temperature is not None:
        cfg.sampling.temperature = args.temperature
    if args.top_p is not None:
        cfg.sampling.top_p = args.top_p
    if args.top_k is not None:
        cfg.sampling.top_k = args.top_k
    if args.max_tokens is not None:
        cfg.sampling.max_tokens = args.max_tokens
    if args.context_size is not None:
        cfg.model.context_size = args.context_size
    if args.threads is not None:
        cfg.model.threads = args.threads
    if args.gpu:
        cfg.model.use_gpu = True
    if args.voice:
        cfg.speech.voice_output = True
    return cfg


def _has_overrides(args: argparse.Namespace) -> bool:
    keys = (
        "backend", "transcript", "models_dir", "log_level", "temperature", "top_p",
        "top_k", "max_tokens", "context_size", "threads",
    )
    return any(getattr(args, key) is not None for key in keys) or args.gpu or args.voice


def open_store(cfg: RootConfig) -> TranscriptStore:
    if not cfg.app.transcript_path:
        return InMemoryTranscriptStore()
    return SqliteTranscriptStore(cfg.app.transcript_path)


def _format_size(size: int) -> str:
    return f"{size / (1024 ** 3):.2f} GB" if size >= 1024 ** 3 else f"{size / (1024 ** 2):.1f} MB"


def _run_turn(session: SessionManager, text: str, out: TextIO) -> None:
    def echo(token: str) -> None:
        out.write(token)
        out.flush()

    handle = session.generate(text, on_token=echo)
    try:
        outcome = handle.result()
    except KeyboardInterrupt:
        session.cancel_generation()
        outcome = handle.result()
    out.write("\n")
    if outcome.is_cancelled:
        out.write("[cancelled]\n")
    elif outcome.is_failed:
        out.write(f"[error] {outcome.error}\n")
    else:
        out.write(f"[{outcome.stats.token_count} tokens, {outcome.stats.tokens_per_s:.1f} tok/s]\n")


def handle_command(session: SessionManager, registry: ModelRegistry, line: str, out: TextIO) -> bool:
    """Run one slash command; return False when the loop should stop."""
    name, _, arg = line.partition(" ")
    arg = arg.strip()
    if name in ("/quit", "/exit"):
        return False
    if name == "/help":
        out.write(HELP_TEXT)
    elif name == "/load":
        if not arg:
            out.write("usage: /load <path|key>\n")
            return True
        result = session.load_model(registry.resolve(arg))
        prefix = "Already loaded" if result.status is LoadStatus.ALREADY_LOADED else "Loaded"
        out.write(f"{prefix}: {result.info.name}\n")
    elif name == "/unload":
        session.unload_model()
        out.write("Model unloaded\n")
    elif name == "/models":
        models = registry.list()
        if not models:
            out.write("No models found\n")
        for model in models:
            size = _format_size(path_size(model.local_path)) if os.path.exists(model.local_path) else "missing"
            out.write(f"{model.key}\t{size}\t{model.local_path}\n")
    elif name == "/info":
        info = session.model_info
        if info is None:
            out.write(f"No model loaded ({session.model_state.value})\n")
        else:
            out.write(
                f"{info.name}\n  path: {info.path}\n  params: {info.parameter_class}\n"
                f"  context: {info.context_size}\n  size: {_format_size(info.size_bytes)}\n"
            )
    elif name == "/history":
        for message in session.history():
            out.write(f"{message.role.value.upper()} [{message.created_at:%Y-%m-%d %H:%M}]: {message.content}\n")
    elif name == "/clear":
        session.clear_history()
        out.write("Transcript cleared\n")
    else:
        out.write(f"Unknown command {name}; try /help\n")
    return True


def chat_loop(session: SessionManager, registry: ModelRegistry, inp: TextIO, out: TextIO) -> None:
    out.write("Type a message, or /help for commands.\n")
    while True:
        out.write("> ")
        out.flush()
        line = inp.readline()
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        try:
            if line.startswith("/"):
                if not handle_command(session, registry, line, out):
                    break
                continue
            _run_turn(session, line, out)
        except (SessionError, ValueError) as exc:
            out.write(f"[error] {exc}\n")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    if _has_overrides(args):
        cfg = apply_overrides(load_root_config(args.config), args)
        provider = StaticConfigProvider(cfg)
    else:
        provider = FileConfigProvider(args.config)
        cfg = provider.current()

    logging.basicConfig(
        level=getattr(logging, cfg.app.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    registry = ModelRegistry(cfg.models, cfg.app.models_dir)
    store = open_store(cfg)
    speech = CommandSpeechOutput.from_settings(cfg.speech) if cfg.speech.enabled else None

    try:
        with SessionManager(create_backend(cfg.app.backend), store, provider, speech) as session:
            if args.model:
                try:
                    session.load_model(registry.resolve(args.model))
                except SessionError as exc:
                    print(f"[error] {exc}", file=sys.stderr)
            chat_loop(session, registry, sys.stdin, sys.stdout)
    finally:
        if isinstance(store, SqliteTranscriptStore):
            store.close()


if __name__ == "__main__":
    main()
