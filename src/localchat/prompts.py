"""Prompt builders."""
from __future__ import annotations

from typing import Iterable

from .config import DEFAULT_SYSTEM_PROMPT
from .transcript.store import Role, TranscriptMessage


def build_chat_messages(
    history: Iterable[TranscriptMessage],
    user_message: str,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = [{"role": "system", "content": system_prompt}]
    for message in history:
        # failed or cancelled-before-output turns leave empty assistant rows
        if not message.content:
            continue
        messages.append({"role": Role(message.role).value, "content": message.content})
    messages.append({"role": "user", "content": user_message})
    return messages


def render_prompt(messages: list[dict[str, str]]) -> str:
    lines: list[str] = []
    for msg in messages:
        role = msg.get("role", "user").capitalize()
        lines.append(f"{role}: {msg.get('content', '')}")
        if msg.get("role") == "system":
            lines.append("")
    lines.append("Assistant:")
    return "\n".join(lines)


def build_prompt(
    history: Iterable[TranscriptMessage],
    user_message: str,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> str:
    return render_prompt(build_chat_messages(history, user_message, system_prompt))
