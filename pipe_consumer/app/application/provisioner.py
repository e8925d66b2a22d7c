"""Queue provisioning: resolve, optionally declare, optionally bind."""
from __future__ import annotations

from typing import Any

from loguru import logger

from pipe_consumer.app.core import SERVICE_NAME
from pipe_consumer.app.domain.escaping import stringify_bytes
from pipe_consumer.app.domain.models import QueueSpec
from pipe_consumer.app.ports.amqp_session import AmqpSession


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def needs_declare(spec: QueueSpec) -> bool:
    """A server-named queue must be created, and so must any queue we bind."""
    return spec.queue is None or spec.exchange is not None or spec.declare


async def provision(session: AmqpSession, spec: QueueSpec) -> bytes:
    """Return the name of the queue to consume from.

    Declared queues are exclusive and auto-delete: they live only as long as
    this connection. A named queue with no exchange and no --declare is
    consumed as it is, without touching the broker here.
    """
    queue = spec.queue or b""
    if not needs_declare(spec):
        return queue

    declared = await session.declare_queue(spec.queue, exclusive=True, auto_delete=True)
    _log("queue_declared", queue=stringify_bytes(declared))

    if spec.queue is None:
        queue = bytes(declared)
        printable = stringify_bytes(queue)
        logger.bind(service_name=SERVICE_NAME, event="server_queue_name", queue=printable).warning(
            "Server provided queue name: {}", printable
        )

    if spec.exchange is not None:
        routing_key = spec.routing_key or b""
        await session.bind_queue(queue, spec.exchange, routing_key)
        _log(
            "queue_bound",
            queue=stringify_bytes(queue),
            exchange=stringify_bytes(spec.exchange),
            routing_key=stringify_bytes(routing_key),
        )

    return queue
