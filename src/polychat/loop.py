"""Runs the application's coroutines on one background event loop.

Dash callbacks are synchronous and run on server worker threads. All
conversation state is owned by coroutines scheduled on a single loop, so
callbacks hand their work to that loop instead of starting loops of their own.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Coroutine, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackgroundLoop:
    """An asyncio event loop running in a daemon thread."""

    def __init__(self, name: str = "polychat-loop"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None:
                self._start()
            return self._loop

    def _start(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name=self.name, daemon=True
        )
        self._thread.start()
        logger.debug("Started event loop thread %s", self.name)

    def submit(self, coro: Coroutine[Any, Any, T]) -> "Future[T]":
        """Schedules ``coro`` and returns immediately."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        """Schedules ``coro`` and blocks until it finishes."""
        return self.submit(coro).result(timeout)

    def stop(self) -> None:
        with self._lock:
            if self._loop is None:
                return
            self._loop.call_soon_threadsafe(self._loop.stop)
            if self._thread is not None:
                self._thread.join(timeout=5)
            self._loop.close()
            self._loop = None
            self._thread = None
