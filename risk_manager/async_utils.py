"""
Async bridge for the Flask handlers.

The Tradovate client is aiohttp-based while Flask handlers are synchronous.
Rather than spinning up a loop per request with ``asyncio.run()``, handlers
submit their coroutine to one event loop that lives in a daemon thread for the
life of the process.

Usage:
    from risk_manager.async_utils import run_async

    settings = run_async(get_settings(client, account_id), timeout=60)
"""

import asyncio
import atexit
import logging
import threading
from typing import Any, Coroutine, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class _LoopThread:
    """An event loop running forever on its own daemon thread, started on first use."""

    def __init__(self, name: str = "RiskManagerLoop"):
        self.name = name
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.thread: Optional[threading.Thread] = None
        self.closed = False
        self._lock = threading.Lock()

    def running_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self.loop is None or not self.loop.is_running():
                self._start()
            return self.loop

    def _start(self):
        loop = asyncio.new_event_loop()
        ready = threading.Event()

        def serve():
            asyncio.set_event_loop(loop)
            loop.call_soon(ready.set)
            loop.run_forever()

        self.loop = loop
        self.thread = threading.Thread(target=serve, name=self.name, daemon=True)
        self.thread.start()
        ready.wait()
        logger.info(f"✅ {self.name} event loop started")

    def stop(self):
        self.closed = True
        if self.loop is None or not self.loop.is_running():
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        if self.thread is not None:
            self.thread.join(timeout=5)
        logger.info(f"{self.name} event loop stopped")


_bridge = _LoopThread()


def run_async(coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
    """
    Run ``coro`` on the background loop and block until it finishes.

    With a ``timeout`` the coroutine is cancelled on the loop once it runs
    over, and ``asyncio.TimeoutError`` is raised here. Any other exception
    from the coroutine is re-raised unchanged.
    """
    if _bridge.closed:
        coro.close()
        raise RuntimeError("Async bridge is shut down")

    loop = _bridge.running_loop()
    if timeout is None:
        return asyncio.run_coroutine_threadsafe(coro, loop).result()

    # wait_for cancels inside the loop; Future.cancel() from this thread would not reach the task
    async def bounded():
        return await asyncio.wait_for(coro, timeout=timeout)

    future = asyncio.run_coroutine_threadsafe(bounded(), loop)
    try:
        # grace period so wait_for's own TimeoutError normally wins
        return future.result(timeout=timeout + 5)
    except (asyncio.TimeoutError, TimeoutError):
        future.cancel()
        raise asyncio.TimeoutError(f"Tradovate request took longer than {timeout}s")


def shutdown_async():
    """Stop the background loop; later run_async() calls fail fast."""
    _bridge.stop()


atexit.register(shutdown_async)
