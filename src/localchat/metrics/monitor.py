"""Peak RSS / VRAM sampler."""
from __future__ import annotations

import threading

import psutil

try:
    import pynvml  # provided by nvidia-ml-py
except Exception:  # pragma: no cover
    pynvml = None


_MB = 1024 * 1024


class MemoryMonitor:
    """Samples process RSS (and GPU memory when NVML is present) on a daemon thread."""

    def __init__(self, interval_ms: int, gpu_index: int | None = None) -> None:
        self._interval = interval_ms / 1000.0
        self._gpu_index = gpu_index
        self._ram_peak = 0
        self._vram_peak: int | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._nvml_handle = None

    @property
    def enabled(self) -> bool:
        return self._interval > 0

    def start(self) -> None:
        if not self.enabled:
            return
        if pynvml is not None and self._gpu_index is not None:
            try:
                pynvml.nvmlInit()
                self._nvml_handle = pynvml.nvmlDeviceGetHandleByIndex(self._gpu_index)
                self._vram_peak = 0
            except Exception:
                self._nvml_handle = None
        self._thread = threading.Thread(target=self._run, name="localchat-memory", daemon=True)
        self._thread.start()

    def stop(self) -> tuple[float | None, float | None]:
        """Stop sampling and return ``(ram_peak_mb, vram_peak_mb)``."""
        if self._thread is None:
            return None, None
        self._stop.set()
        self._thread.join(timeout=1.0)
        self._thread = None
        vram = None
        if self._nvml_handle is not None:
            vram = (self._vram_peak or 0) / _MB
            try:
                pynvml.nvmlShutdown()
            except Exception:
                pass
        return self._ram_peak / _MB, vram

    def _sample(self, proc: psutil.Process) -> None:
        rss = proc.memory_info().rss
        if rss > self._ram_peak:
            self._ram_peak = rss
        if self._nvml_handle is not None:
            try:
                used = pynvml.nvmlDeviceGetMemoryInfo(self._nvml_handle).used
            except Exception:
                return
            if used > (self._vram_peak or 0):
                self._vram_peak = used

    def _run(self) -> None:
        proc = psutil.Process()
        self._sample(proc)
        while not self._stop.wait(self._interval):
            self._sample(proc)
