from __future__ import annotations

from typing import Any

from loguru import logger

from pipe_consumer.app.core import SERVICE_NAME
from pipe_consumer.app.ports.amqp_session import AmqpSession
from pipe_consumer.app.ports.pipeline import PipelineHandle


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class Acknowledger:
    """
    Settles a delivery from its pipeline's exit status.

    Success acks exactly the one tag (no multiple, no requeue) unless the
    consumer runs in no-ack mode. Failure sends nothing: no nack, no reject,
    so the broker is free to redeliver by its own policy.
    """

    def __init__(self, session: AmqpSession, *, no_ack: bool) -> None:
        self._session = session
        self._no_ack = no_ack

    async def finish(self, pipeline: PipelineHandle, delivery_tag: int) -> bool:
        outcome = await pipeline.wait()
        if not outcome.success:
            _log("pipeline_failed", delivery_tag=delivery_tag, returncodes=list(outcome.returncodes))
            return False
        if not self._no_ack:
            await self._session.acknowledge(delivery_tag)
            _log("delivery_acked", delivery_tag=delivery_tag)
        return True
