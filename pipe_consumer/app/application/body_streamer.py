from __future__ import annotations

from pipe_consumer.app.domain.errors import TransportError
from pipe_consumer.app.ports.amqp_session import AmqpSession
from pipe_consumer.app.ports.pipeline import PipelineHandle


async def copy_body(session: AmqpSession, pipeline: PipelineHandle, body_size: int) -> int:
    """Stream one delivery's body into the pipeline input, then close it.

    Returns the number of bytes written. A body that ends short of
    `body_size` leaves the input open and raises.
    """
    transferred = 0
    if body_size > 0:
        async for fragment in session.read_body_fragments():
            await pipeline.write(fragment)
            transferred += len(fragment)
            if transferred >= body_size:
                break
    if transferred < body_size:
        raise TransportError(
            "reading body frame",
            f"body ended after {transferred} of {body_size} bytes",
        )
    await pipeline.close_input()
    return transferred
