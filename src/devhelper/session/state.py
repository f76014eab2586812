"""Session state and the shared engine handle."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..config import ModelSpec
from ..engines.base import DeviceSpec, InferenceEngine
from ..errors import EngineInitFailed, EngineNotReady
from ..registry import ModelRegistry
from .store import Entry

logger = logging.getLogger("devhelper.session")


class Mode(str, Enum):
    SINGLE_SHOT = "single-shot"
    MULTI_TURN = "multi-turn"


class SessionStatus(str, Enum):
    IDLE = "idle"
    AWAITING_ENGINE = "awaiting-engine"
    STREAMING = "streaming"
    ERROR = "error"


class Readiness(str, Enum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


IN_FLIGHT = (SessionStatus.AWAITING_ENGINE, SessionStatus.STREAMING)


@dataclass
class Session:
    mode: Mode
    status: SessionStatus = SessionStatus.IDLE
    active_reply: Entry | None = None
    last_error: str | None = None
    answer: str = ""
    last_metrics: dict[str, Any] | None = None

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT


class EngineHandle:
    """Owns the single engine instance for the lifetime of the application."""

    def __init__(self, engine: InferenceEngine, registry: ModelRegistry, device: DeviceSpec) -> None:
        self.engine = engine
        self.registry = registry
        self.device = device
        self.readiness = Readiness.LOADING
        self.error: str | None = None
        self.model_key: str | None = None
        self.alive = True
        self.busy = False
        self.loading = False
        self._settling: asyncio.Future | None = None

    @property
    def ready(self) -> bool:
        return self.alive and self.readiness is Readiness.READY

    def acquire(self) -> None:
        self.busy = True

    def release(self, pending: asyncio.Future | None = None) -> None:
        """Mark the engine idle, or once `pending` (engine work that outlived its request) is done."""
        if pending is None or pending.done():
            self._settle(pending)
            return
        logger.info("Engine work outlived its request; holding the engine until it finishes")
        self._settling = pending
        pending.add_done_callback(self._settle)

    def _settle(self, pending: asyncio.Future | None) -> None:
        if pending is not None and not pending.cancelled() and pending.exception() is not None:
            logger.warning("Abandoned engine call failed: %s", pending.exception())
        if self._settling is pending or pending is None:
            self._settling = None
        self.busy = False

    async def wait_idle(self) -> None:
        if self._settling is not None:
            await asyncio.wait({self._settling})

    def require_ready(self) -> InferenceEngine:
        if not self.alive:
            raise EngineNotReady("Engine has been torn down")
        if self.readiness is not Readiness.READY:
            raise EngineNotReady(self.error or f"Engine is {self.readiness.value}")
        return self.engine

    async def initialize(self, model_key: str) -> Readiness:
        if not self.alive:
            raise EngineNotReady("Engine has been torn down")
        if self.busy:
            raise EngineNotReady("Cannot switch models while a request is in flight")
        if self.loading:
            raise EngineNotReady(f"Model {self.model_key} is still loading")
        if self.readiness is Readiness.READY and self.model_key == model_key:
            return self.readiness

        if self.model_key is not None:
            self.engine.unload()
        self.readiness = Readiness.LOADING
        self.error = None
        self.model_key = model_key
        logger.info("Initializing engine with model %s", model_key)
        self.loading = True
        try:
            spec = self._resolve(model_key)
            await self.engine.initialize(spec, self.device)
        except Exception as exc:  # noqa: BLE001
            if not self.alive:
                return self.readiness
            self.readiness = Readiness.FAILED
            self.error = str(exc) or exc.__class__.__name__
            logger.error("Engine initialization failed for %s: %s", model_key, self.error)
            return self.readiness
        finally:
            self.loading = False

        if not self.alive:
            # torn down while loading; the result is discarded
            self.engine.unload()
            return self.readiness
        self.readiness = Readiness.READY
        logger.info("Engine ready with model %s", model_key)
        return self.readiness

    def _resolve(self, model_key: str) -> ModelSpec:
        try:
            return self.registry.get(model_key)
        except KeyError as exc:
            raise EngineInitFailed(str(exc.args[0])) from exc

    def teardown(self) -> None:
        if not self.alive:
            return
        self.alive = False
        self.engine.unload()
        logger.info("Engine torn down")
