"""One engine call at a time even across cancellation, and broken subscribers."""

import asyncio
from unittest.mock import MagicMock

import pytest

from devhelper.session import REPLY_FAILED, Mode, SessionController, SessionStatus

from .conftest import FakeEngine, ThreadedEngine, make_controller

CODE = "def f(x): return x*2"


async def _cancel(task):
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


async def test_cancelled_answer_holds_engine_until_thread_finishes():
    engine = ThreadedEngine()
    ctl = make_controller(engine, Mode.SINGLE_SHOT)

    task = asyncio.create_task(ctl.submit("q1", code=CODE))
    await asyncio.to_thread(engine.started.wait, 5)
    await _cancel(task)

    assert ctl.status is SessionStatus.ERROR
    assert ctl.handle.busy is True
    assert await ctl.submit("q2", code=CODE) is False
    assert engine.running == 1

    engine.gate.set()
    await ctl.handle.wait_idle()

    assert ctl.handle.busy is False
    assert ctl.answer == ""
    assert await ctl.submit("q3", code=CODE) is True
    assert ctl.answer == "done"
    assert engine.max_running == 1


async def test_cancelled_stream_holds_engine_across_controllers():
    engine = ThreadedEngine(deltas=["a", "b"])
    chat = make_controller(engine, Mode.MULTI_TURN)
    answer = SessionController(chat.handle, Mode.SINGLE_SHOT)

    task = asyncio.create_task(chat.submit("hi"))
    await asyncio.to_thread(engine.started.wait, 5)
    await _cancel(task)

    assert chat.entries()[-1].content == REPLY_FAILED
    assert answer.can_submit is False
    assert await answer.submit("q", code=CODE) is False

    engine.gate.set()
    await chat.handle.wait_idle()

    assert chat.handle.busy is False
    assert await chat.submit("again") is True
    assert chat.entries()[-1].content == "ab"
    assert engine.max_running == 1


async def test_failing_listener_does_not_fail_answer():
    ctl = make_controller(FakeEngine(), Mode.SINGLE_SHOT)

    def broken(_ctl):
        raise RuntimeError("listener broke")

    ctl.subscribe(broken)

    assert await ctl.submit("q", code=CODE) is True
    assert ctl.status is SessionStatus.IDLE
    assert ctl.answer == "ok"
    assert ctl.last_error is None
    assert ctl.handle.busy is False


async def test_failing_listener_does_not_fail_stream():
    ctl = make_controller(FakeEngine(deltas=["Hel", "lo!"]), Mode.MULTI_TURN)
    seen = []

    def broken(_ctl):
        raise RuntimeError("listener broke")

    ctl.subscribe(broken)
    ctl.subscribe(lambda c: seen.append(c.entries()[-1].content))

    await ctl.submit("hi")

    assert ctl.entries()[-1].content == "Hello!"
    assert ctl.status is SessionStatus.IDLE
    assert "Hello!" in seen


async def test_instrumentation_failure_is_recorded_not_raised():
    instrumentation = MagicMock()
    instrumentation.start.side_effect = RuntimeError("sampler broke")
    engine = FakeEngine()
    ctl = make_controller(engine, Mode.SINGLE_SHOT, instrumentation=instrumentation)

    assert await ctl.submit("q", code=CODE) is True

    assert ctl.status is SessionStatus.ERROR
    assert ctl.last_error == "sampler broke"
    assert ctl.handle.busy is False
    assert engine.requests == []
