"""Session controller: one engine request at a time, in either interaction mode.

The controller builds a prompt from the context store, calls the engine and
folds the result back into the store. Single-shot requests await one complete
response and keep it in ``Session.answer``; multi-turn requests stream deltas
into a placeholder reply entry. Failures never escape ``submit``: they are
recorded on the session as ``status == ERROR`` plus ``last_error``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from ..config import GenerationDefaults
from ..engines.base import CompletionRequest
from ..errors import RequestFailed
from ..metrics import Instrumentation, RequestProbe
from ..prompts import SYSTEM_PROMPT, build_answer_prompt, build_chat_prompt
from .state import EngineHandle, Mode, Session, SessionStatus
from .store import ContextStore, Entry, EntryKind

logger = logging.getLogger("devhelper.session")

NO_ANSWER = "No answer returned."
REPLY_FAILED = "Response failed."

Listener = Callable[["SessionController"], None]


class SessionController:
    def __init__(
        self,
        handle: EngineHandle,
        mode: Mode | str,
        generation: GenerationDefaults | None = None,
        instrumentation: Instrumentation | None = None,
        store: ContextStore | None = None,
    ) -> None:
        self.handle = handle
        self.session = Session(mode=Mode(mode))
        self.store = store if store is not None else ContextStore()
        self._generation = generation or GenerationDefaults()
        self._instrumentation = instrumentation
        self._listeners: list[Listener] = []
        self._alive = True

    @property
    def mode(self) -> Mode:
        return self.session.mode

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def last_error(self) -> str | None:
        return self.session.last_error

    @property
    def answer(self) -> str:
        return self.session.answer

    @property
    def live(self) -> bool:
        return self._alive and self.handle.alive

    @property
    def can_submit(self) -> bool:
        return self.live and self.handle.ready and not self.handle.busy and not self.session.in_flight

    def entries(self) -> list[Entry]:
        return self.store.entries()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:  # noqa: BLE001
                logger.exception("Session listener %r failed", listener)

    def set_mode(self, mode: Mode | str) -> bool:
        mode = Mode(mode)
        if self.session.in_flight:
            return False
        if mode is not self.session.mode:
            self.store.reset()
            self.session = Session(mode=mode)
            self._notify()
        return True

    def reset(self) -> bool:
        if self.session.in_flight:
            return False
        self.store.reset()
        self.session = Session(mode=self.session.mode)
        self._notify()
        return True

    def append_code(self, code: str) -> Entry | None:
        if not code or not code.strip():
            return None
        entry = self.store.append(EntryKind.CODE_CONTEXT, code)
        self._notify()
        return entry

    def close(self) -> None:
        """Tear down: anything still in flight is discarded when it arrives."""
        self._alive = False
        self._listeners.clear()

    def _rejection(self, text: str, code: str | None) -> str | None:
        if not self.live:
            return "session closed"
        if not self.handle.ready:
            return f"engine {self.handle.readiness.value}"
        if self.session.in_flight or self.handle.busy:
            return "request already in flight"
        if not text or not text.strip():
            return "empty input"
        if self.session.mode is Mode.SINGLE_SHOT and (not code or not code.strip()):
            return "no code to ask about"
        return None

    async def submit(self, text: str, code: str | None = None) -> bool:
        """Start a request; returns False when it was rejected without side effects."""
        reason = self._rejection(text, code)
        if reason is not None:
            logger.info("Rejected %s request: %s", self.session.mode.value, reason)
            return False
        if self.session.mode is Mode.SINGLE_SHOT:
            await self._run_answer(text, code)
        else:
            await self._run_chat(text)
        return True

    def _request(self, prompt: str, stream: bool) -> CompletionRequest:
        return CompletionRequest(
            system_prompt=SYSTEM_PROMPT,
            user_prompt=prompt,
            stream=stream,
            temperature=self._generation.temperature,
            max_tokens=self._generation.max_tokens,
            top_p=self._generation.top_p,
            max_context=self._generation.max_context,
        )

    def _begin(self) -> RequestProbe | None:
        self.handle.acquire()
        self.session.last_error = None
        self.session.status = SessionStatus.AWAITING_ENGINE
        probe = self._instrumentation.start() if self._instrumentation is not None else None
        self._notify()
        return probe

    async def _run_answer(self, question: str, code: str) -> None:
        self.store.reset()
        self.store.append(EntryKind.CODE_CONTEXT, code)
        self.store.append(EntryKind.USER_TEXT, question)
        self.session.answer = ""
        prompt = build_answer_prompt(self.store.code_context(), question)

        probe = None
        call: asyncio.Future | None = None
        try:
            probe = self._begin()
            engine = self.handle.require_ready()
            # the engine call is shielded so cancelling submit never orphans a running generate()
            call = asyncio.ensure_future(engine.complete(self._request(prompt, stream=False)))
            response = await asyncio.shield(call)
            if not self.live:
                logger.info("Discarding answer that arrived after teardown")
                return
            text = response.text()
            if probe is not None and text:
                probe.mark_text(text)
            self.session.answer = text if text is not None else NO_ANSWER
            self.session.status = SessionStatus.IDLE
        except asyncio.CancelledError as exc:
            self._fail(exc)
            raise
        except Exception as exc:  # noqa: BLE001
            self._fail(exc)
        finally:
            pending = call if call is not None and not call.done() else None
            await self._finish(probe, pending)

    async def _run_chat(self, message: str) -> None:
        user_entry = self.store.append(EntryKind.USER_TEXT, message)
        prior = self.store.prior_user_turns(before=user_entry)
        reply = self.store.append(EntryKind.ASSISTANT_REPLY, "")
        self.session.active_reply = reply
        prompt = build_chat_prompt(self.store.code_context(), prior, message)

        probe = None
        stream = None
        step: asyncio.Future | None = None
        deltas = 0
        try:
            probe = self._begin()
            engine = self.handle.require_ready()
            stream = engine.complete_streaming(self._request(prompt, stream=True))
            iterator = stream.__aiter__()
            accumulated = ""
            while True:
                step = asyncio.ensure_future(_next_delta(iterator))
                delta = await asyncio.shield(step)
                if delta is _STREAM_END:
                    break
                if not self.live:
                    logger.info("Discarding stream that was still running at teardown")
                    return
                piece = delta.text()
                deltas += 1
                if probe is not None:
                    probe.mark_delta(piece)
                if self.session.status is SessionStatus.AWAITING_ENGINE:
                    self.session.status = SessionStatus.STREAMING
                if not piece:
                    continue
                accumulated += piece
                self.store.update_reply(reply, accumulated)
                self._notify()
            if not self.live:
                return
            self.session.status = SessionStatus.IDLE
            logger.info("Stream finished after %d deltas (%d chars)", deltas, len(accumulated))
        except asyncio.CancelledError as exc:
            self._fail(exc)
            raise
        except Exception as exc:  # noqa: BLE001
            self._fail(exc)
        finally:
            pending = None
            if step is not None and not step.done():
                pending = asyncio.ensure_future(_close_stream(stream, step))
            elif stream is not None:
                await _close_stream(stream, None)
            await self._finish(probe, pending)

    def _fail(self, exc: BaseException) -> None:
        if not self.live:
            logger.info("Discarding failure that arrived after teardown: %s", exc)
            return
        if isinstance(exc, asyncio.CancelledError):
            failure = RequestFailed("Request cancelled")
        elif isinstance(exc, RequestFailed):
            failure = exc
        else:
            failure = RequestFailed(str(exc) or exc.__class__.__name__)
        logger.warning("%s request failed: %s", self.session.mode.value, failure, exc_info=exc)
        self.session.status = SessionStatus.ERROR
        self.session.last_error = str(failure)
        if self.session.active_reply is not None:
            self.store.update_reply(self.session.active_reply, REPLY_FAILED)
        else:
            self.session.answer = ""

    async def _finish(self, probe: RequestProbe | None, pending: asyncio.Future | None) -> None:
        """Release the engine, or hand it the still-running engine work to wait on."""
        self.handle.release(pending)
        self.session.active_reply = None
        metrics = await probe.finish() if probe is not None else None
        if not self.live:
            return
        if metrics is not None:
            self.session.last_metrics = metrics.to_dict()
        self._notify()


_STREAM_END = object()


async def _next_delta(iterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _STREAM_END


async def _close_stream(stream, step: asyncio.Future | None) -> None:
    if step is not None:
        # an async generator cannot be closed while one of its steps is still running
        await asyncio.wait({step})
        if not step.cancelled() and step.exception() is not None:
            logger.debug("Abandoned stream step failed: %s", step.exception())
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
