"""
Delivery dispatch loop.

States:
  SETUP -> QOS_SET (only with a count in 1..65535) -> CONSUMING ->
  WAITING <-> DISPATCHING -> DONE.

One delivery is handled at a time: the next frame is not awaited until the
previous pipeline has been fed, reaped and settled. The count limit and any
shutdown request are only looked at between deliveries.
"""
from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from pipe_consumer.app.application.acknowledger import Acknowledger
from pipe_consumer.app.application.body_streamer import copy_body
from pipe_consumer.app.constants import DISPATCHER_STATE
from pipe_consumer.app.core import SERVICE_NAME
from pipe_consumer.app.domain.escaping import stringify_bytes
from pipe_consumer.app.domain.models import ConsumeOptions, Frame, FrameKind
from pipe_consumer.app.ports.amqp_session import AmqpSession
from pipe_consumer.app.ports.pipeline import PipelineLauncher


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class DeliveryDispatcher:
    def __init__(
        self,
        session: AmqpSession,
        launcher: PipelineLauncher,
        options: ConsumeOptions,
        *,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        self._session = session
        self._launcher = launcher
        self._options = options
        self._shutdown = shutdown
        self._acknowledger = Acknowledger(session, no_ack=options.no_ack)
        self._state = DISPATCHER_STATE.SETUP

    @property
    def state(self) -> str:
        return self._state

    def _set_state(self, state: str) -> None:
        self._state = state

    async def run(self, queue: bytes) -> int:
        """Consume from `queue` until the count limit or a shutdown request.

        Returns the number of deliveries handled.
        """
        prefetch_count = self._options.prefetch_count
        if prefetch_count is not None:
            await self._session.set_qos(prefetch_count)
            self._set_state(DISPATCHER_STATE.QOS_SET)
            _log("qos_set", prefetch_count=prefetch_count)

        consumer_tag = await self._session.start_consume(queue, no_ack=self._options.no_ack)
        self._set_state(DISPATCHER_STATE.CONSUMING)
        _log("consume_started", queue=stringify_bytes(queue), consumer_tag=consumer_tag, no_ack=self._options.no_ack)

        processed = 0
        while not self._options.limit_reached(processed):
            self._set_state(DISPATCHER_STATE.WAITING)
            frame = await self._next_frame()
            if frame is None:
                break

            if frame.kind is FrameKind.METHOD_DELIVER:
                self._set_state(DISPATCHER_STATE.DISPATCHING)
                await self._dispatch(frame)
                processed += 1
                self._session.release_buffers()
            else:
                # METHOD_OTHER, HEADER, BODY, HEARTBEAT: nothing to do here.
                logger.bind(service_name=SERVICE_NAME, event="frame_ignored", kind=frame.kind.value).debug("")

        self._set_state(DISPATCHER_STATE.DONE)
        _log("consumer_stopped", processed=processed)
        return processed

    async def _next_frame(self) -> Frame | None:
        """Wait for a frame; None means shutdown was requested first."""
        if self._shutdown is None:
            return await self._session.wait_frame()
        if self._shutdown.is_set():
            return None

        frame_task = asyncio.ensure_future(self._session.wait_frame())
        stop_task = asyncio.ensure_future(self._shutdown.wait())
        done, _ = await asyncio.wait({frame_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if frame_task in done:
            stop_task.cancel()
            return frame_task.result()

        frame_task.cancel()
        try:
            await frame_task
        except asyncio.CancelledError:
            pass
        return None

    async def _dispatch(self, frame: Frame) -> None:
        delivery_tag = frame.delivery_tag or 0
        _log(
            "delivery_received",
            delivery_tag=delivery_tag,
            body_size=frame.body_size,
            exchange=frame.exchange,
            routing_key=frame.routing_key,
            redelivered=frame.redelivered,
        )
        pipeline = await self._launcher.spawn(self._options.command)
        async with pipeline:
            transferred = await copy_body(self._session, pipeline, frame.body_size)
            _log("body_streamed", delivery_tag=delivery_tag, bytes=transferred)
            await self._acknowledger.finish(pipeline, delivery_tag)
