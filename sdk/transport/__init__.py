"""sdk.transport - Pluggable pub/sub channel layer.

Public API:
    - TransportBase: Abstract base class for channel adapters
    - SubscriptionHandle: Lightweight subscription handle
    - createTransport / connectTransport: Factory functions keyed by URI scheme
    - registerAdapter: Register custom adapters
    - MemoryTransport: In-process bus ('memory://')
    - NatsTransport: NATS ('nats://')

Usage:
    from sdk.transport import connectTransport

    transport = await connectTransport('memory://catalog')

    def handler(subject, payload):
        print(f"Received on {subject}: {payload}")

    handle = await transport.subscribe('catalog.changes.properties', handler)
    await transport.publish('catalog.changes.properties', b'{"type": "INSERT"}')

    await handle.unsubscribe()
    await transport.close()

Property of Uncompromising Sensors LLC.
"""

from .transportBase import TransportBase, SubscriptionHandle
from .transportFactory import (
    createTransport,
    connectTransport,
    registerAdapter,
    TransportRegistry,
    getDefaultRegistry
)
from .memoryTransport import MemoryTransport
from .natsTransport import NatsTransport

registerAdapter('memory', MemoryTransport)
registerAdapter('nats', NatsTransport)

__all__ = [
    'TransportBase',
    'SubscriptionHandle',
    'createTransport',
    'connectTransport',
    'registerAdapter',
    'TransportRegistry',
    'getDefaultRegistry',
    'MemoryTransport',
    'NatsTransport'
]
