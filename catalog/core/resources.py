"""
Shared external resources, created lazily and at most once per key.

The first caller for a key starts the factory; every later caller awaits
the same future. Callers never wait on each other's unrelated keys.
A factory that fails is evicted so the next caller starts a fresh attempt.

    session = await getSharedResources().get(('http', baseUrl), createSession)

Property of Uncompromising Sensors LLC.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Hashable

from sdk.logging import getLogger


class SharedResources:
    """Memoized resource futures keyed by resource identity"""

    def __init__(self):
        self.log = getLogger()
        self._futures: Dict[Hashable, asyncio.Future] = {}

    async def get(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        loop = asyncio.get_running_loop()
        future = self._futures.get(key)

        # Futures are bound to the loop that created them
        if future is not None and future.get_loop() is not loop:
            self._futures.pop(key, None)
            future = None

        if future is None:
            future = loop.create_task(factory())
            self._futures[key] = future
            future.add_done_callback(lambda f, k=key: self._evictOnFailure(k, f))
            self.log.debug("Creating shared resource", key=str(key))

        return await asyncio.shield(future)

    def _evictOnFailure(self, key: Hashable, future: asyncio.Future):
        if future.cancelled() or future.exception() is not None:
            if self._futures.get(key) is future:
                del self._futures[key]
            reason = 'cancelled' if future.cancelled() else repr(future.exception())
            self.log.warning("Shared resource creation failed", key=str(key), reason=reason)

    def has(self, key: Hashable) -> bool:
        future = self._futures.get(key)
        return future is not None and future.done() and not future.cancelled() and future.exception() is None

    async def close(self):
        """Close every created resource that exposes close() and forget all keys."""
        futures, self._futures = self._futures, {}
        for key, future in futures.items():
            if not future.done() or future.cancelled() or future.exception() is not None:
                continue
            resource = future.result()
            closer = getattr(resource, 'close', None)
            if closer is None:
                continue
            try:
                result = closer()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.log.warning("Failed to close shared resource", key=str(key), errorClass=type(e).__name__, errorMsg=str(e))


_default = SharedResources()


def getSharedResources() -> SharedResources:
    return _default
