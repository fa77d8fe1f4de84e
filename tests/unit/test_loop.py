"""Tests for the background event loop used by the Dash callbacks."""

import asyncio
import threading

import pytest
from polychat.loop import BackgroundLoop


@pytest.fixture
def background():
    loop = BackgroundLoop(name="test-loop")
    yield loop
    loop.stop()


def test_run_returns_result(background):
    async def add(a, b):
        await asyncio.sleep(0)
        return a + b

    assert background.run(add(2, 3), timeout=5) == 5


def test_runs_on_its_own_thread(background):
    async def thread_name():
        return threading.current_thread().name

    assert background.run(thread_name(), timeout=5) == "test-loop"


def test_exceptions_propagate(background):
    async def fail():
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        background.run(fail(), timeout=5)


def test_submit_does_not_block(background):
    async def wait_for(event):
        await event.wait()
        return "done"

    async def make_event():
        return asyncio.Event()

    event = background.run(make_event(), timeout=5)
    future = background.submit(wait_for(event))
    assert not future.done()

    background.loop.call_soon_threadsafe(event.set)
    assert future.result(timeout=5) == "done"


def test_stop_is_idempotent():
    loop = BackgroundLoop()
    loop.stop()
    loop.run(asyncio.sleep(0), timeout=5)
    loop.stop()
    loop.stop()
