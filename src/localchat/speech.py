"""Fire-and-forget speech output."""
from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from typing import Protocol

from .config import SpeechSettings

logger = logging.getLogger(__name__)


class SpeechOutput(Protocol):
    def speak(self, text: str) -> None:
        ...

    def stop(self) -> None:
        ...


class NullSpeechOutput:
    def speak(self, text: str) -> None:
        pass

    def stop(self) -> None:
        pass


class CommandSpeechOutput:
    """Hands text to a TTS command line (``espeak``, ``say``, ...) without waiting.

    A new utterance interrupts the previous one.
    """

    def __init__(self, command: list[str], voice: str = "default", rate: float = 1.0) -> None:
        if not command:
            raise ValueError("speech command must not be empty")
        self._command = list(command)
        self._voice = voice
        self._rate = rate
        self._lock = threading.Lock()
        self._process: subprocess.Popen | None = None

    @classmethod
    def from_settings(cls, settings: SpeechSettings) -> SpeechOutput:
        if not settings.command or shutil.which(settings.command[0]) is None:
            logger.warning("Speech command %r not available; speech disabled", settings.command)
            return NullSpeechOutput()
        return cls(settings.command, voice=settings.voice, rate=settings.rate)

    def _argv(self, text: str) -> list[str]:
        argv = list(self._command)
        program = argv[0].rsplit("/", 1)[-1]
        if program.startswith("espeak"):
            argv += ["-s", str(int(175 * self._rate))]
            if self._voice != "default":
                argv += ["-v", self._voice]
        elif program == "say" and self._voice != "default":
            argv += ["-v", self._voice]
        argv.append(text)
        return argv

    def speak(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        with self._lock:
            self._terminate()
            self._process = subprocess.Popen(
                self._argv(text),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )

    def stop(self) -> None:
        with self._lock:
            self._terminate()

    def _terminate(self) -> None:
        if self._process is not None and self._process.poll() is None:
            self._process.terminate()
        self._process = None
