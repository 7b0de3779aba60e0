"""
Process-wide asyncio runtime.

Flask views are synchronous; the core is async. One event loop runs on a
daemon thread and every coroutine submitted from a view executes there,
inside its own app context, so locks, chain lanes and the HTTP pool are
shared by all requests.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class ServiceRuntime:
    def __init__(self, app=None):
        self.app = app
        self._loop = None
        self._thread = None
        self._lock = threading.Lock()

    def _run(self, loop):
        asyncio.set_event_loop(loop)
        loop.run_forever()

    def _ensure_loop(self):
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                loop = asyncio.new_event_loop()
                thread = threading.Thread(target=self._run, args=(loop,), name="credledger-runtime", daemon=True)
                thread.start()
                self._loop, self._thread = loop, thread
                logger.debug("Service runtime loop started")
            return self._loop

    def call(self, factory, timeout=None):
        """Run ``factory()`` (a coroutine function) on the runtime loop and wait."""
        loop = self._ensure_loop()
        app = self.app

        async def runner():
            if app is None:
                return await factory()
            with app.app_context():
                return await factory()

        future = asyncio.run_coroutine_threadsafe(runner(), loop)
        return future.result(timeout)

    def shutdown(self, cleanup=None):
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None
        if loop is None or loop.is_closed():
            return
        if cleanup is not None:
            asyncio.run_coroutine_threadsafe(cleanup(), loop).result(10)
        loop.call_soon_threadsafe(loop.stop)
        thread.join(5)
        loop.close()
        logger.debug("Service runtime loop stopped")


class HashLocks:
    """Short-lived in-process locks keyed by document hash."""

    def __init__(self):
        self._locks = {}
        self._waiters = {}

    @asynccontextmanager
    async def hold(self, key):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]

    def in_flight(self, key):
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self):
        return len(self._locks)
