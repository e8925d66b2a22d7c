"""
AmqpSession implementation over aio_pika.

Lifecycle:
  DISCONNECTED -> CONNECTING (backoff, one attempt by default) -> CONNECTED ->
  CHANNEL_OPEN -> CONSUMING -> CLOSING -> CLOSED.
  There is no reconnect: a lost connection or channel surfaces as a
  TransportError from the next wait_frame().

Frames:
  aio_pika assembles deliveries itself, so every message handed to the consume
  callback is queued and surfaced as one METHOD_DELIVER frame. The assembled
  body is then replayed by read_body_fragments() in frame_max sized pieces.
  The delivered message is held only until release_buffers() or the next
  wait_frame(), so its tag is never acked after a newer delivery arrived.
"""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import AMQPError
from aiormq.exceptions import ChannelInvalidStateError
from loguru import logger

from pipe_consumer.app.config.settings import Settings
from pipe_consumer.app.core import SERVICE_NAME
from pipe_consumer.app.core.backoff import exponential_backoff
from pipe_consumer.app.domain.errors import ConfigurationError, RpcError, TransportError
from pipe_consumer.app.domain.escaping import stringify_bytes
from pipe_consumer.app.domain.models import Frame
from pipe_consumer.app.infrastructure.messaging.rabbitmq.constants import SessionState


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


# ChannelInvalidStateError (channel already closed) is a RuntimeError, not an AMQPError.
_RPC_ERRORS = (AMQPError, ChannelInvalidStateError)


# aio_pika only speaks str names.
def _text(name: bytes) -> str:
    try:
        return name.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ConfigurationError(f"name is not valid UTF-8: {stringify_bytes(name)}") from e


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class AioPikaSession:
    """AmqpSession implementation"""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._state = SessionState.DISCONNECTED
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._queues: dict[bytes, AbstractQueue] = {}
        self._inbox: asyncio.Queue[AbstractIncomingMessage | BaseException] = asyncio.Queue()
        self._current: AbstractIncomingMessage | None = None
        self._consumer_tag: str | None = None
        self._closing = False

    @property
    def state(self) -> SessionState:
        return self._state

    def _set_state(self, state: SessionState) -> None:
        self._state = state

    def _require_channel(self) -> AbstractChannel:
        if self._channel is None:
            raise TransportError("using channel", "session not connected")
        return self._channel

    def _on_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if self._closing:
            return
        _log("broker_disconnect_detected", reason=_describe(exc) if exc else "closed")
        self._inbox.put_nowait(exc or ConnectionError("channel closed"))

    async def connect(self) -> None:
        self._set_state(SessionState.CONNECTING)
        _log("rmq_connecting")
        async for attempt, delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            _log("rmq_connect_attempt", attempt=attempt, delay=delay)
            try:
                self._connection = await aio_pika.connect(self._settings.build_amqp_url())
                break
            except (AMQPError, OSError) as e:
                logger.warning("rmq connect failed: {}", e)
                if attempt >= self._settings.max_connection_attempts:
                    _log("rmq_connect_failed", attempt=attempt)
                    self._set_state(SessionState.DISCONNECTED)
                    raise TransportError("opening connection", _describe(e)) from e
        self._set_state(SessionState.CONNECTED)
        _log("rmq_connected")
        assert self._connection is not None
        self._connection.close_callbacks.add(self._on_closed)
        try:
            self._channel = await self._connection.channel()
        except _RPC_ERRORS as e:
            raise RpcError("channel.open", _describe(e)) from e
        self._channel.close_callbacks.add(self._on_closed)
        self._set_state(SessionState.CHANNEL_OPEN)

    async def _lookup_queue(self, name: bytes, operation: str) -> AbstractQueue:
        queue = self._queues.get(name)
        if queue is None:
            text = _text(name)
            try:
                queue = await self._require_channel().get_queue(text, ensure=False)
            except _RPC_ERRORS as e:
                raise RpcError(operation, _describe(e)) from e
            self._queues[name] = queue
        return queue

    async def declare_queue(self, name: bytes | None, *, exclusive: bool, auto_delete: bool) -> bytes:
        channel = self._require_channel()
        try:
            queue = await channel.declare_queue(
                _text(name) if name else None,
                exclusive=exclusive,
                auto_delete=auto_delete,
            )
        except _RPC_ERRORS as e:
            raise RpcError("queue.declare", _describe(e)) from e
        declared = queue.name.encode("utf-8")
        self._queues[declared] = queue
        return declared

    async def bind_queue(self, queue: bytes, exchange: bytes, routing_key: bytes) -> None:
        target = await self._lookup_queue(queue, "queue.bind")
        try:
            # An explicit "" keeps aio_pika from defaulting the key to the queue name.
            await target.bind(_text(exchange), routing_key=_text(routing_key))
        except _RPC_ERRORS as e:
            raise RpcError("queue.bind", _describe(e)) from e

    async def set_qos(self, prefetch_count: int) -> None:
        try:
            await self._require_channel().set_qos(prefetch_count=prefetch_count)
        except _RPC_ERRORS as e:
            raise RpcError("basic.qos", _describe(e)) from e

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        await self._inbox.put(message)

    async def start_consume(self, queue: bytes, *, no_ack: bool) -> str:
        target = await self._lookup_queue(queue, "basic.consume")
        try:
            self._consumer_tag = await target.consume(self._on_message, no_ack=no_ack)
        except _RPC_ERRORS as e:
            raise RpcError("basic.consume", _describe(e)) from e
        self._set_state(SessionState.CONSUMING)
        return self._consumer_tag

    async def wait_frame(self) -> Frame:
        self._current = None
        item = await self._inbox.get()
        if isinstance(item, BaseException):
            raise TransportError("waiting for header frame", _describe(item))
        self._current = item
        return Frame.deliver(
            item.delivery_tag or 0,
            len(item.body),
            exchange=item.exchange or "",
            routing_key=item.routing_key or "",
            redelivered=bool(item.redelivered),
        )

    async def read_body_fragments(self) -> AsyncIterator[bytes]:
        message = self._current
        if message is None:
            raise TransportError("reading body frame", "no delivery in progress")
        body = message.body
        size = self._settings.body_fragment_size
        for offset in range(0, len(body), size):
            yield body[offset:offset + size]

    async def acknowledge(self, delivery_tag: int) -> None:
        message = self._current
        if message is None or message.delivery_tag != delivery_tag:
            raise RpcError("basic.ack", f"delivery tag {delivery_tag} is no longer valid")
        try:
            await message.ack()
        except _RPC_ERRORS as e:
            raise RpcError("basic.ack", _describe(e)) from e

    def release_buffers(self) -> None:
        self._current = None

    async def close(self) -> None:
        if self._state == SessionState.CLOSED:
            return
        self._closing = True
        self._set_state(SessionState.CLOSING)
        self._current = None
        self._queues.clear()
        if self._channel:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning("channel close failed (continuing to close connection): {}", e)
            self._channel = None
        if self._connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning("connection close failed: {}", e)
            self._connection = None
        self._set_state(SessionState.CLOSED)
