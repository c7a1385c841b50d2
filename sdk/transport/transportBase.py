"""
TransportBase: Abstract base for bytes-in/bytes-out pub/sub channels.
connect(uri, **opts), publish(subject, bytes), subscribe(subject, handler), close()

Used as the change-notification channel: the authoritative store publishes
change events per collection subject, clients subscribe and react.
Delivery is at-least-once and unordered across subjects.

Property of Uncompromising Sensors LLC.
"""


# Imports
import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Optional, Dict, Any, List


class SubscriptionHandle:
    """
    Lightweight subscription handle for local lifecycle control.

    Read-only fields:
        - handleId: Unique id of this subscription within its transport
        - subject: The subscription subject
        - active: Whether this subscription is currently active
        - messagesSeen: Messages delivered to the handler so far"""


    def __init__(self, subject: str, unsubscribeCallback: Callable):
        self._handleId = uuid.uuid4().hex[:12]
        self._subject = subject
        self._active = True
        self._messagesSeen = 0
        self._unsubscribeCallback = unsubscribeCallback

    @property
    def handleId(self) -> str:
        return self._handleId

    @property
    def subject(self) -> str:
        return self._subject

    @property
    def active(self) -> bool:
        return self._active

    @property
    def messagesSeen(self) -> int:
        return self._messagesSeen

    def _incrementMessages(self):
        self._messagesSeen += 1

    def _deactivate(self):
        self._active = False

    async def unsubscribe(self):
        """Unsubscribe from this subject (local instance only)."""
        if self._active:
            self._active = False
            await self._unsubscribeCallback(self)


class TransportBase(ABC):
    """
    Abstract base class for channel adapters.

    Lifecycle States:
        - READY: Transport is operational
        - CLOSED: Transport has not been connected or has been shut down"""


    def __init__(self):

        from sdk.logging import getLogger
        self._logger = getLogger()

        self._state = 'CLOSED'
        self._endpoint = None
        self._connectedAt = None
        self._instanceId = str(uuid.uuid4())[:8]
        self._subscriptions: Dict[str, SubscriptionHandle] = {}  # handleId -> handle
        self._reconnectListeners: List[Callable[[], Any]] = []


    # ===== Core Abstract Methods (Must Implement) =====
    @abstractmethod
    async def connect(self, uri: str, **opts) -> None:
        pass

    @abstractmethod
    async def publish(self, subject: str, payload: bytes | memoryview, timeout: Optional[float] = None) -> None:
        pass


    @abstractmethod
    async def subscribe(self, subject: str, handler: Callable[[str, bytes], Any],
                       timeout: Optional[float] = None) -> SubscriptionHandle:
        pass


    @abstractmethod
    async def close(self, timeout: Optional[float] = None) -> None:
        pass


    # ===== Core Properties =====
    @property
    @abstractmethod
    def transportType(self) -> str:
        pass

    @property
    def state(self) -> str:
        return self._state


    @property
    def isConnected(self) -> bool:
        return self._state == 'READY'


    # ===== Optional Methods (Safe Base Defaults) =====
    async def drain(self, timeout: Optional[float] = None) -> None:
        pass


    def status(self) -> Dict[str, Any]:
        return {'state': self._state, 'endpoint': self._endpoint, 'sinceTs': self._connectedAt,
                'subs': len([h for h in self._subscriptions.values() if h.active])}


    def setLogger(self, logger) -> None:
        self._logger = logger


    def addReconnectListener(self, listener: Callable[[], Any]) -> Callable[[], None]:
        """
        Called after the connection is re-established. Messages published while
        disconnected are lost, so listeners treat this as "anything may have changed".
        Returns a function that removes the listener.
        """
        self._reconnectListeners.append(listener)
        return lambda: self._reconnectListeners.remove(listener) if listener in self._reconnectListeners else None


    # ===== Helper Methods =====
    def _notifyReconnect(self):
        for listener in list(self._reconnectListeners):
            try:
                listener()
            except Exception as e:
                self._log(f"Reconnect listener error: {e!r}", level='ERROR', errorClass=type(e).__name__)


    def _log(self, message: str, level: str = 'INFO', **fields):
        fields.setdefault('transport', self.transportType)
        fields.setdefault('endpoint', self._endpoint)
        fields.setdefault('instanceId', self._instanceId)
        getattr(self._logger, level.lower(), self._logger.info)(message, **fields)


    def _requireReady(self):
        if self._state != 'READY':
            raise RuntimeError(f'{type(self).__name__} not connected')


    async def _dispatch(self, handle: SubscriptionHandle, handler: Callable, subject: str, payload: bytes):
        """Invoke a user handler; handler errors are logged, never propagated into the transport."""
        if not handle.active:
            return
        try:
            handle._incrementMessages()
            if asyncio.iscoroutinefunction(handler):
                await handler(subject, payload)
            else:
                handler(subject, payload)
        except Exception as e:
            self._log(f'Handler error: {e!r}', level='ERROR', subject=subject, errorClass=type(e).__name__)


    async def _unsubscribeHandle(self, handle: SubscriptionHandle):
        self._subscriptions.pop(handle.handleId, None)

    # ===== Context Manager Support =====
    async def __aenter__(self):
        return self


    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
