"""Broker-backed tests. Run with AMQP_URL pointing at a disposable RabbitMQ."""
from __future__ import annotations

import asyncio
import os
import uuid

import pytest

from pipe_consumer.app.config.settings import Settings
from pipe_consumer.app.domain.models import ConsumeOptions, QueueSpec
from pipe_consumer.app.main import run_consumer

AMQP_URL = os.environ.get("AMQP_URL", "")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not AMQP_URL, reason="AMQP_URL not set"),
]


async def _publish(queue_name: str, bodies: list[bytes]) -> None:
    import aio_pika

    conn = await aio_pika.connect(AMQP_URL)
    ch = await conn.channel()
    await ch.declare_queue(queue_name, auto_delete=False)
    for body in bodies:
        await ch.default_exchange.publish(aio_pika.Message(body=body), routing_key=queue_name)
    await ch.close()
    await conn.close()


async def _message_count_and_delete(queue_name: str) -> int:
    import aio_pika

    conn = await aio_pika.connect(AMQP_URL)
    ch = await conn.channel()
    queue = await ch.declare_queue(queue_name, passive=True)
    count = queue.declaration_result.message_count
    await queue.delete(if_unused=False, if_empty=False)
    await ch.close()
    await conn.close()
    return count


def test_named_queue_bodies_reach_the_command_and_are_acked(tmp_path):
    queue_name = f"pipe-consumer-it-{uuid.uuid4()}"
    out = tmp_path / "bodies.txt"

    async def _run() -> tuple[int, int]:
        await _publish(queue_name, [b"first\n", b"second\n"])
        processed = await run_consumer(
            Settings(_env_file=None, amqp_url=AMQP_URL),
            QueueSpec(queue=queue_name.encode()),
            ConsumeOptions(command=("sh", "-c", 'cat >> "$0"', str(out)), count=2),
        )
        return processed, await _message_count_and_delete(queue_name)

    processed, remaining = asyncio.run(_run())

    assert processed == 2
    assert remaining == 0
    assert out.read_text() == "first\nsecond\n"


def test_failed_command_leaves_message_unacked(tmp_path):
    queue_name = f"pipe-consumer-it-{uuid.uuid4()}"

    async def _run() -> tuple[int, int]:
        await _publish(queue_name, [b"payload"])
        processed = await run_consumer(
            Settings(_env_file=None, amqp_url=AMQP_URL),
            QueueSpec(queue=queue_name.encode()),
            ConsumeOptions(command=("sh", "-c", "cat > /dev/null; exit 1"), count=1),
        )
        # Closing the connection returned the unacked message to the queue.
        await asyncio.sleep(0.5)
        return processed, await _message_count_and_delete(queue_name)

    processed, remaining = asyncio.run(_run())

    assert processed == 1
    assert remaining == 1
