"""
Change Notification Bridge

Subscribes to the change channel of one collection and turns bursts of
change events into single invalidation calls.

Coalescing:
    - The first event after a quiet period opens a window of windowMs
    - Further events inside the window are absorbed
    - When the window closes, onInvalidate() is called exactly once
    - An event after that opens a new window (and a new invalidation)

After unsubscribe() no invalidation is delivered, including for events
that were already queued or whose window was still open.

A channel reconnect opens a window too: events published while the
channel was down were lost, so the view must refetch.

Property of Uncompromising Sensors LLC.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, Optional

import orjson

from sdk.logging import getLogger
from sdk.transport import SubscriptionHandle, TransportBase

from .models import ChangeEvent


DEFAULT_WINDOW_MS = 50.0


class ChangeNotificationBridge:
    """Collection change subscription with burst coalescing"""

    def __init__(self, transport: TransportBase, subjectPrefix: str = 'catalog.changes',
                 windowMs: float = DEFAULT_WINDOW_MS):
        self.log = getLogger()
        self.transport = transport
        self.subjectPrefix = subjectPrefix
        self.windowMs = windowMs

        self.collectionName: Optional[str] = None
        self._onInvalidate: Optional[Callable[[], Any]] = None
        self._handle: Optional[SubscriptionHandle] = None
        self._removeReconnect: Optional[Callable[[], None]] = None
        self._generation = 0
        self._active = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._callbackTasks: set = set()

        self.eventsSeen = 0
        self.malformedEvents = 0
        self.invalidations = 0
        self.reconnects = 0
        self.lastEvent: Optional[ChangeEvent] = None

    @property
    def subject(self) -> Optional[str]:
        if self.collectionName is None:
            return None
        return f"{self.subjectPrefix}.{self.collectionName}"

    @property
    def isSubscribed(self) -> bool:
        return self._active

    async def subscribe(self, collectionName: str, onInvalidate: Callable[[], Any]) -> None:
        """
        Start listening for changes to `collectionName`.
        `onInvalidate` may be a plain function or a coroutine function.
        """
        if self._active:
            raise RuntimeError(f"Already subscribed to {self.subject}")

        self._generation += 1
        generation = self._generation
        self.collectionName = collectionName
        self._onInvalidate = onInvalidate
        self._active = True

        def handler(subject: str, payload: bytes):
            self._onMessage(generation, payload)

        try:
            self._handle = await self.transport.subscribe(self.subject, handler)
        except Exception:
            self._active = False
            raise
        self._removeReconnect = self.transport.addReconnectListener(lambda: self._onReconnect(generation))
        self.log.info("Subscribed to changes", subject=self.subject, windowMs=self.windowMs)

    async def unsubscribe(self) -> None:
        if not self._active and self._handle is None:
            return
        self._active = False
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._removeReconnect is not None:
            self._removeReconnect()
            self._removeReconnect = None

        handle, self._handle = self._handle, None
        if handle is not None:
            await handle.unsubscribe()
        self.log.info("Unsubscribed from changes", subject=self.subject, eventsSeen=self.eventsSeen,
                      invalidations=self.invalidations)

    def _onMessage(self, generation: int, payload: bytes):
        if not self._active or generation != self._generation:
            return
        self.eventsSeen += 1

        try:
            event = ChangeEvent.fromPayload(orjson.loads(payload))
            self.lastEvent = event
            self.log.debug("Change received", kind=event.kind.value, recordId=event.recordId)
        except (ValueError, TypeError, AttributeError) as e:
            # Still a change signal
            self.malformedEvents += 1
            self.log.warning("Malformed change payload", subject=self.subject, errorClass=type(e).__name__, errorMsg=str(e))

        self._openWindow(generation)

    def _onReconnect(self, generation: int):
        if not self._active or generation != self._generation:
            return
        self.reconnects += 1
        self.log.warning("Change channel reconnected, refreshing", subject=self.subject)
        self._openWindow(generation)

    def _openWindow(self, generation: int):
        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.windowMs / 1000.0, self._closeWindow, generation)

    def _closeWindow(self, generation: int):
        self._timer = None
        if not self._active or generation != self._generation:
            return

        self.invalidations += 1
        self.log.debug("Invalidating", subject=self.subject, invalidations=self.invalidations)
        try:
            result = self._onInvalidate()
        except Exception as e:
            self.log.error("Invalidation callback failed", subject=self.subject, errorClass=type(e).__name__, errorMsg=str(e))
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(self._awaitCallback(result))
            self._callbackTasks.add(task)
            task.add_done_callback(self._callbackTasks.discard)

    async def _awaitCallback(self, awaitable):
        try:
            await awaitable
        except Exception as e:
            self.log.error("Invalidation callback failed", subject=self.subject, errorClass=type(e).__name__, errorMsg=str(e))

    def status(self) -> Dict[str, Any]:
        return {
            'subject': self.subject,
            'active': self._active,
            'windowMs': self.windowMs,
            'windowOpen': self._timer is not None,
            'eventsSeen': self.eventsSeen,
            'malformedEvents': self.malformedEvents,
            'invalidations': self.invalidations,
            'reconnects': self.reconnects,
        }
