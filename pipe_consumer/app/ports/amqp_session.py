"""Port: AMQP session on a single channel. Implementations live in infrastructure.

Every method that talks to the broker raises `RpcError` when the broker rejects
the request and `TransportError` when the connection itself fails.
"""
from __future__ import annotations

from typing import AsyncIterator, Protocol

from pipe_consumer.app.domain.models import Frame


class AmqpSession(Protocol):
    async def connect(self) -> None: ...

    async def declare_queue(self, name: bytes | None, *, exclusive: bool, auto_delete: bool) -> bytes:
        """Declare a queue; returns the (possibly server-assigned) queue name."""
        ...

    async def bind_queue(self, queue: bytes, exchange: bytes, routing_key: bytes) -> None: ...

    async def set_qos(self, prefetch_count: int) -> None: ...

    async def start_consume(self, queue: bytes, *, no_ack: bool) -> str:
        """Issue basic.consume with a broker-assigned tag; returns that tag."""
        ...

    async def wait_frame(self) -> Frame:
        """Block, without timeout, until the next frame arrives on the channel."""
        ...

    def read_body_fragments(self) -> AsyncIterator[bytes]:
        """Body fragments of the most recently announced delivery, in arrival order."""
        ...

    async def acknowledge(self, delivery_tag: int) -> None: ...

    def release_buffers(self) -> None:
        """Drop anything held for the delivery just handled. Advisory only."""
        ...

    async def close(self) -> None:
        """Release resources. Safe to call more than once."""
        ...
