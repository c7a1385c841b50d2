"""
Memory Transport Adapter

In-process pub/sub for embedded deployments and tests. Every transport
connected to the same URI shares one bus, so a store publishing on one
instance reaches subscribers on another.

API:
    connect(uri)                  # memory://<busName>
    publish(subject, payload)     # Delivered on a later loop tick, never inline
    subscribe(subject, handler)   # Exact subject, or prefix match with trailing '>'
    close()

Design:
    - Delivery is asynchronous: publish() returns before any handler runs
    - Per-subscriber delivery order follows publish order
    - Handler errors are logged and do not affect other subscribers

Property of Uncompromising Sensors LLC.
"""


# Imports
import asyncio, time
from typing import Callable, Optional, Dict, Any, List, Tuple
from urllib.parse import urlparse

# Local imports
from .transportBase import TransportBase, SubscriptionHandle


class _MemoryBus:
    """Subscriber table shared by all transports on one bus name."""

    def __init__(self, name: str):
        self.name = name
        self.subscribers: Dict[str, Tuple['MemoryTransport', SubscriptionHandle, Callable]] = {}

    def matching(self, subject: str) -> List[Tuple['MemoryTransport', SubscriptionHandle, Callable]]:
        matches = []
        for transport, handle, handler in self.subscribers.values():
            pattern = handle.subject
            if pattern == subject or (pattern.endswith('>') and subject.startswith(pattern[:-1])):
                matches.append((transport, handle, handler))
        return matches


_buses: Dict[str, _MemoryBus] = {}


def _getBus(name: str) -> _MemoryBus:
    if name not in _buses:
        _buses[name] = _MemoryBus(name)
    return _buses[name]


# Class
class MemoryTransport(TransportBase):
    """In-process transport sharing a named bus."""

    _VALID_CONNECT_OPTS = set()


    def __init__(self):
        super().__init__()
        self._bus: Optional[_MemoryBus] = None
        self._publishCounter: int = 0
        self._pendingDeliveries: set = set()


    @property
    def transportType(self) -> str:
        return 'memory'


    async def connect(self, uri: str, **opts) -> None:

        if self._state == 'READY':
            raise RuntimeError('MemoryTransport already connected')

        unknown = set(opts.keys()) - self._VALID_CONNECT_OPTS
        if unknown:
            raise ValueError(f"Unknown options for MemoryTransport: {unknown}")

        parsed = urlparse(uri)
        if parsed.scheme.lower() != 'memory':
            raise ValueError(f"Unsupported memory scheme '{parsed.scheme}'. Supported: memory")

        busName = (parsed.netloc + parsed.path) or 'default'
        self._bus = _getBus(busName)
        self._endpoint = f'memory://{busName}'
        self._state = 'READY'
        self._connectedAt = time.time()

        self._log('MemoryTransport connected', event='connect')


    async def publish(self, subject: str, payload: bytes | memoryview, timeout: Optional[float] = None) -> None:

        self._requireReady()

        if isinstance(payload, memoryview):
            payload = bytes(payload)

        loop = asyncio.get_running_loop()
        for transport, handle, handler in self._bus.matching(subject):
            task = loop.create_task(transport._dispatch(handle, handler, subject, payload))
            transport._pendingDeliveries.add(task)
            task.add_done_callback(transport._pendingDeliveries.discard)

        self._publishCounter += 1
        if self._publishCounter % 100 == 1:
            self._log(f'Published message: {subject}', level='DEBUG', event='publish')


    async def subscribe(self, subject: str, handler: Callable[[str, bytes], Any],
                        timeout: Optional[float] = None) -> SubscriptionHandle:

        self._requireReady()

        if not callable(handler):
            raise ValueError(f"Handler must be callable, got {type(handler)}")

        handle = SubscriptionHandle(subject, self._unsubscribeSubject)
        self._subscriptions[handle.handleId] = handle
        self._bus.subscribers[handle.handleId] = (self, handle, handler)

        self._log(f'Subscribed: {subject}', event='subscribe')
        return handle


    async def close(self, timeout: Optional[float] = None) -> None:

        if self._state == 'CLOSED':
            return
        self._state = 'CLOSED'

        for handle in list(self._subscriptions.values()):
            handle._deactivate()
            self._bus.subscribers.pop(handle.handleId, None)
        self._subscriptions.clear()

        self._log('MemoryTransport closed', event='close')


    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every delivery scheduled to this transport's handlers has run."""
        if not self._pendingDeliveries:
            return
        try:
            await asyncio.wait_for(asyncio.gather(*list(self._pendingDeliveries)), timeout=timeout)
        except asyncio.TimeoutError:
            self._log('Drain timed out', level='WARNING')


    # ===== Internal Methods =====
    async def _unsubscribeSubject(self, handle: SubscriptionHandle):
        if self._bus is not None:
            self._bus.subscribers.pop(handle.handleId, None)
        await self._unsubscribeHandle(handle)
        self._log(f'Unsubscribed: {handle.subject}', event='unsubscribe')
