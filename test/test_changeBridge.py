"""
Change Notification Bridge and Memory Transport Tests

Tests for:
- Asynchronous in-process delivery and subject matching
- Coalescing a burst of change events into one invalidation
- A later event producing a second invalidation
- No invalidation after unsubscribe, including events already in flight
- Malformed payloads still counting as change signals
- Channel reconnects treated as a change signal

Run: python -m pytest test/test_changeBridge.py -v

Property of Uncompromising Sensors LLC.
"""

import asyncio
import sys
import time
import uuid
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import orjson
import pytest

from catalog.core.changeBridge import ChangeNotificationBridge
from sdk.transport import MemoryTransport, connectTransport, createTransport


SUBJECT = 'catalog.changes.properties'


def busUri():
    return f"memory://test-{uuid.uuid4().hex[:8]}"


def change(kind='INSERT', recordId=1):
    record = {} if kind == 'DELETE' else {'id': recordId}
    oldRecord = {'id': recordId} if kind == 'DELETE' else {}
    return orjson.dumps({'type': kind, 'table': 'properties', 'record': record, 'old_record': oldRecord})


# =============================================================================
# MEMORY TRANSPORT
# =============================================================================

class TestMemoryTransport:

    def test_factory_selects_adapter(self):
        assert isinstance(createTransport('memory://x'), MemoryTransport)
        with pytest.raises(ValueError):
            createTransport('carrier-pigeon://x')

    @pytest.mark.asyncio
    async def test_delivery_is_never_inline(self):
        uri = busUri()
        publisher = await connectTransport(uri)
        subscriber = await connectTransport(uri)
        received = []
        await subscriber.subscribe(SUBJECT, lambda subject, payload: received.append((subject, payload)))

        await publisher.publish(SUBJECT, b'one')
        assert received == []

        await subscriber.drain(timeout=1)
        assert received == [(SUBJECT, b'one')]

        await publisher.close()
        await subscriber.close()

    @pytest.mark.asyncio
    async def test_prefix_subscription(self):
        transport = await connectTransport(busUri())
        received = []
        await transport.subscribe('catalog.changes.>', lambda subject, payload: received.append(subject))

        await transport.publish('catalog.changes.properties', b'x')
        await transport.publish('catalog.changes.contacts', b'y')
        await transport.publish('other.subject', b'z')
        await transport.drain(timeout=1)

        assert sorted(received) == ['catalog.changes.contacts', 'catalog.changes.properties']
        await transport.close()

    @pytest.mark.asyncio
    async def test_unsubscribed_handle_drops_queued_message(self):
        transport = await connectTransport(busUri())
        received = []
        handle = await transport.subscribe(SUBJECT, lambda subject, payload: received.append(payload))

        await transport.publish(SUBJECT, b'queued')
        await handle.unsubscribe()
        await transport.drain(timeout=1)

        assert received == []
        assert not handle.active
        await transport.close()

    @pytest.mark.asyncio
    async def test_handler_error_does_not_break_delivery(self):
        transport = await connectTransport(busUri())
        received = []

        def broken(subject, payload):
            raise RuntimeError('handler bug')

        await transport.subscribe(SUBJECT, broken)
        await transport.subscribe(SUBJECT, lambda subject, payload: received.append(payload))
        await transport.publish(SUBJECT, b'ok')
        await transport.drain(timeout=1)

        assert received == [b'ok']
        await transport.close()


# =============================================================================
# COALESCING
# =============================================================================

class TestCoalescing:

    @pytest.mark.asyncio
    async def test_burst_triggers_one_invalidation(self):
        transport = await connectTransport(busUri())
        bridge = ChangeNotificationBridge(transport, windowMs=50)
        calls = []
        await bridge.subscribe('properties', lambda: calls.append(time.monotonic()))

        publishedAt = time.monotonic()
        await transport.publish(SUBJECT, change('INSERT', 1))
        await transport.publish(SUBJECT, change('UPDATE', 1))
        await transport.publish(SUBJECT, change('DELETE', 2))
        await asyncio.sleep(0.2)

        assert len(calls) == 1
        assert calls[0] - publishedAt >= 0.045
        assert bridge.status()['eventsSeen'] == 3
        assert bridge.lastEvent.recordId == 2

        await bridge.unsubscribe()
        await transport.close()

    @pytest.mark.asyncio
    async def test_later_event_triggers_second_invalidation(self):
        transport = await connectTransport(busUri())
        bridge = ChangeNotificationBridge(transport, windowMs=30)
        calls = []
        await bridge.subscribe('properties', lambda: calls.append(1))

        await transport.publish(SUBJECT, change('INSERT', 1))
        await transport.publish(SUBJECT, change('INSERT', 2))
        await asyncio.sleep(0.15)
        assert len(calls) == 1

        await transport.publish(SUBJECT, change('UPDATE', 2))
        await asyncio.sleep(0.15)
        assert len(calls) == 2
        assert bridge.invalidations == 2

        await bridge.unsubscribe()
        await transport.close()

    @pytest.mark.asyncio
    async def test_coroutine_callback(self):
        transport = await connectTransport(busUri())
        bridge = ChangeNotificationBridge(transport, windowMs=0)
        done = asyncio.Event()

        async def onInvalidate():
            done.set()

        await bridge.subscribe('properties', onInvalidate)
        await transport.publish(SUBJECT, change())
        await asyncio.wait_for(done.wait(), timeout=1)

        await bridge.unsubscribe()
        await transport.close()

    @pytest.mark.asyncio
    async def test_malformed_payload_still_invalidates(self):
        transport = await connectTransport(busUri())
        bridge = ChangeNotificationBridge(transport, windowMs=10)
        calls = []
        await bridge.subscribe('properties', lambda: calls.append(1))

        await transport.publish(SUBJECT, b'not json at all')
        await transport.publish(SUBJECT, orjson.dumps(['a', 'list']))
        await asyncio.sleep(0.1)

        assert calls == [1]
        assert bridge.status()['malformedEvents'] == 2

        await bridge.unsubscribe()
        await transport.close()

    @pytest.mark.asyncio
    async def test_other_collections_ignored(self):
        transport = await connectTransport(busUri())
        bridge = ChangeNotificationBridge(transport, windowMs=10)
        calls = []
        await bridge.subscribe('properties', lambda: calls.append(1))

        await transport.publish('catalog.changes.contacts', change())
        await asyncio.sleep(0.05)

        assert calls == []
        await bridge.unsubscribe()
        await transport.close()


# =============================================================================
# UNSUBSCRIBE
# =============================================================================

class TestUnsubscribe:

    @pytest.mark.asyncio
    async def test_open_window_is_discarded(self):
        transport = await connectTransport(busUri())
        bridge = ChangeNotificationBridge(transport, windowMs=50)
        calls = []
        await bridge.subscribe('properties', lambda: calls.append(1))

        await transport.publish(SUBJECT, change())
        await transport.drain(timeout=1)
        assert bridge.status()['windowOpen']

        await bridge.unsubscribe()
        await asyncio.sleep(0.12)

        assert calls == []
        await transport.close()

    @pytest.mark.asyncio
    async def test_in_flight_event_is_discarded(self):
        uri = busUri()
        publisher = await connectTransport(uri)
        subscriber = await connectTransport(uri)
        bridge = ChangeNotificationBridge(subscriber, windowMs=0)
        calls = []
        await bridge.subscribe('properties', lambda: calls.append(1))

        await publisher.publish(SUBJECT, change())
        await bridge.unsubscribe()
        await asyncio.sleep(0.05)
        await publisher.publish(SUBJECT, change())
        await asyncio.sleep(0.05)

        assert calls == []
        assert not bridge.isSubscribed
        await publisher.close()
        await subscriber.close()

    @pytest.mark.asyncio
    async def test_resubscribe_after_unsubscribe(self):
        transport = await connectTransport(busUri())
        bridge = ChangeNotificationBridge(transport, windowMs=0)
        calls = []

        await bridge.subscribe('properties', lambda: calls.append('first'))
        with pytest.raises(RuntimeError):
            await bridge.subscribe('properties', lambda: None)
        await bridge.unsubscribe()

        await bridge.subscribe('properties', lambda: calls.append('second'))
        await transport.publish(SUBJECT, change())
        await asyncio.sleep(0.05)

        assert calls == ['second']
        await bridge.unsubscribe()
        await transport.close()


# =============================================================================
# RECONNECT
# =============================================================================

class TestReconnect:

    @pytest.mark.asyncio
    async def test_reconnect_triggers_refresh(self):
        transport = await connectTransport(busUri())
        bridge = ChangeNotificationBridge(transport, windowMs=10)
        calls = []
        await bridge.subscribe('properties', lambda: calls.append(1))

        transport._notifyReconnect()
        await asyncio.sleep(0.05)

        assert calls == [1]
        assert bridge.status()['reconnects'] == 1

        await bridge.unsubscribe()
        transport._notifyReconnect()
        await asyncio.sleep(0.05)

        assert calls == [1]
        await transport.close()
