"""Per-generation statistics."""
from __future__ import annotations

import time
from dataclasses import dataclass

from .monitor import MemoryMonitor


@dataclass(frozen=True)
class GenerationStats:
    token_count: int = 0
    elapsed_s: float = 0.0
    tokens_per_s: float = 0.0
    ram_peak_mb: float | None = None
    vram_peak_mb: float | None = None


class Instrumentation:
    def __init__(self, sampling_interval_ms: int, gpu_index: int | None = None) -> None:
        self._monitor = MemoryMonitor(sampling_interval_ms, gpu_index)
        self._start: float | None = None
        self._tokens = 0

    def start(self) -> None:
        self._start = time.perf_counter()
        self._monitor.start()

    def count_token(self) -> None:
        self._tokens += 1

    def finish(self) -> GenerationStats:
        elapsed = time.perf_counter() - self._start if self._start is not None else 0.0
        ram_peak, vram_peak = self._monitor.stop()
        tokens_per_s = self._tokens / elapsed if elapsed > 0 else 0.0
        return GenerationStats(
            token_count=self._tokens,
            elapsed_s=elapsed,
            tokens_per_s=tokens_per_s,
            ram_peak_mb=ram_peak,
            vram_peak_mb=vram_peak,
        )
