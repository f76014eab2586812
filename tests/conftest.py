"""Shared fixtures: a scripted in-process engine standing in for the local model."""
from __future__ import annotations

import asyncio
import threading

import pytest

from devhelper.config import ModelSpec
from devhelper.engines.base import CompletionResponse, DeviceSpec, text_delta, text_response
from devhelper.registry import ModelRegistry
from devhelper.session import EngineHandle, Mode, Readiness, SessionController


class FakeEngine:
    """Replays a canned response or delta sequence.

    `gate_at` holds the call before emitting the delta with that index (or,
    for complete(), before returning) until `release` is set.
    """

    def __init__(
        self,
        response: CompletionResponse | None = None,
        deltas: list[str | None] | None = None,
        error: Exception | None = None,
        fail_after: int | None = None,
        init_error: Exception | None = None,
        gate_at: int | None = None,
    ) -> None:
        self.response = response if response is not None else text_response("ok")
        self.deltas = deltas or []
        self.error = error
        self.fail_after = fail_after
        self.init_error = init_error
        self.gate_at = gate_at
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.requests = []
        self.initialized = []
        self.unloads = 0
        self.stream_closed = False

    async def initialize(self, model, device) -> None:
        self.initialized.append(model.key)
        if self.gate_at is not None:
            self.entered.set()
            await self.release.wait()
        if self.init_error is not None:
            raise self.init_error

    def unload(self) -> None:
        self.unloads += 1

    async def complete(self, request):
        self.requests.append(request)
        if self.gate_at is not None:
            self.entered.set()
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.response

    async def complete_streaming(self, request):
        self.requests.append(request)
        try:
            for index, piece in enumerate(self.deltas):
                if self.gate_at == index:
                    self.entered.set()
                    await self.release.wait()
                if self.fail_after == index:
                    raise self.error
                yield text_delta(piece)
            if self.fail_after == len(self.deltas):
                raise self.error
        finally:
            self.stream_closed = True


class ThreadedEngine:
    """Does its work in worker threads, like the AirLLM engine; counts overlapping calls."""

    def __init__(self, deltas: list[str] | None = None, reply: str = "done") -> None:
        self.deltas = deltas if deltas is not None else ["a", "b"]
        self.reply = reply
        self.started = threading.Event()
        self.gate = threading.Event()
        self._lock = threading.Lock()
        self.running = 0
        self.max_running = 0
        self.unloads = 0

    def _work(self) -> None:
        with self._lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        self.started.set()
        self.gate.wait(5)
        with self._lock:
            self.running -= 1

    async def initialize(self, model, device) -> None:
        pass

    def unload(self) -> None:
        self.unloads += 1

    async def complete(self, request):
        await asyncio.to_thread(self._work)
        return text_response(self.reply)

    async def complete_streaming(self, request):
        for piece in self.deltas:
            await asyncio.to_thread(self._work)
            yield text_delta(piece)


MODELS = [
    ModelSpec(key="tiny", display_name="Tiny", local_path="/models/tiny"),
    ModelSpec(key="small", display_name="Small", local_path="/models/small"),
]


def make_handle(engine: FakeEngine, ready: bool = True) -> EngineHandle:
    handle = EngineHandle(engine, ModelRegistry(list(MODELS)), DeviceSpec(kind="cpu", gpu_index=None))
    if ready:
        handle.readiness = Readiness.READY
        handle.model_key = "tiny"
    return handle


def make_controller(engine: FakeEngine, mode: Mode, ready: bool = True, **kwargs) -> SessionController:
    return SessionController(make_handle(engine, ready=ready), mode, **kwargs)


@pytest.fixture
def registry() -> ModelRegistry:
    return ModelRegistry(list(MODELS))
