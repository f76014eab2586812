"""Per-request instrumentation: latency, delta counts and memory peaks."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

import psutil

try:
    import pynvml  # provided by nvidia-ml-py
except Exception:  # pragma: no cover
    pynvml = None

logger = logging.getLogger("devhelper.metrics")

_MB = 1024 * 1024


@dataclass
class RequestMetrics:
    elapsed_s: float
    first_delta_s: float | None
    deltas: int
    chars: int
    ram_peak_mb: float | None
    vram_peak_mb: float | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PeakSampler:
    """Polls `probe` on the event loop and keeps the largest value seen."""

    def __init__(self, probe: Callable[[], int | None], interval_ms: int) -> None:
        self._probe = probe
        self._interval = max(interval_ms, 1) / 1000.0
        self._peak: int | None = None
        self._task: asyncio.Task | None = None

    def _sample(self) -> None:
        value = self._probe()
        if value is not None and (self._peak is None or value > self._peak):
            self._peak = value

    async def _run(self) -> None:
        while True:
            self._sample()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        self._sample()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> float | None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._sample()
        return None if self._peak is None else self._peak / _MB


def ram_probe() -> Callable[[], int | None]:
    proc = psutil.Process()
    return lambda: proc.memory_info().rss


class _NvmlProbe:
    def __init__(self, gpu_index: int) -> None:
        self._handle = None
        if pynvml is None:
            return
        try:
            pynvml.nvmlInit()
            self._handle = pynvml.nvmlDeviceGetHandleByIndex(gpu_index)
        except Exception:
            logger.debug("NVML unavailable; VRAM peaks will not be recorded")
            self._handle = None

    def __call__(self) -> int | None:
        if self._handle is None:
            return None
        try:
            return int(pynvml.nvmlDeviceGetMemoryInfo(self._handle).used)
        except Exception:
            return None

    def close(self) -> None:
        if self._handle is None:
            return
        self._handle = None
        try:
            pynvml.nvmlShutdown()
        except Exception:
            pass


class RequestProbe:
    def __init__(self, interval_ms: int, gpu_index: int | None) -> None:
        self._start = time.perf_counter()
        self._first_delta: float | None = None
        self._deltas = 0
        self._chars = 0
        self._vram_probe = _NvmlProbe(gpu_index) if gpu_index is not None and gpu_index >= 0 else None
        self._ram = PeakSampler(ram_probe(), interval_ms)
        self._vram = PeakSampler(self._vram_probe, interval_ms) if self._vram_probe is not None else None
        self._ram.start()
        if self._vram is not None:
            self._vram.start()

    def mark_delta(self, text: str) -> None:
        if self._first_delta is None:
            self._first_delta = time.perf_counter() - self._start
        self._deltas += 1
        self._chars += len(text)

    def mark_text(self, text: str) -> None:
        self._chars += len(text)

    async def finish(self) -> RequestMetrics:
        elapsed = time.perf_counter() - self._start
        ram_peak = await self._ram.stop()
        vram_peak = None
        if self._vram is not None:
            vram_peak = await self._vram.stop()
            self._vram_probe.close()
        return RequestMetrics(
            elapsed_s=elapsed,
            first_delta_s=self._first_delta,
            deltas=self._deltas,
            chars=self._chars,
            ram_peak_mb=ram_peak,
            vram_peak_mb=vram_peak,
        )


class Instrumentation:
    def __init__(self, sampling_interval_ms: int, gpu_index: int | None) -> None:
        self._interval = sampling_interval_ms
        self._gpu_index = gpu_index

    def start(self) -> RequestProbe:
        return RequestProbe(self._interval, self._gpu_index)


def metrics_markdown(metrics: dict[str, Any] | None) -> str:
    if not metrics:
        return "No metrics yet."
    first = metrics.get("first_delta_s")
    first_str = f"{first:.3f}" if isinstance(first, (int, float)) else "n/a"
    ram = metrics.get("ram_peak_mb")
    ram_str = f"{ram:.2f}" if isinstance(ram, (int, float)) else "n/a"
    vram = metrics.get("vram_peak_mb")
    vram_str = f"{vram:.2f}" if isinstance(vram, (int, float)) else "n/a"
    return (
        f"**elapsed_s:** {metrics.get('elapsed_s', 0):.3f}\n"
        f"**first_delta_s:** {first_str}\n"
        f"**deltas:** {metrics.get('deltas', 0)}\n"
        f"**chars:** {metrics.get('chars', 0)}\n"
        f"**ram_peak_mb:** {ram_str}\n"
        f"**vram_peak_mb:** {vram_str}"
    )
