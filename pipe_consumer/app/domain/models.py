"""Domain models."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pipe_consumer.app.constants import CHANNEL_ID, MAX_PREFETCH_COUNT
from pipe_consumer.app.domain.errors import ConfigurationError
from pipe_consumer.app.domain.escaping import stringify_bytes


def _is_utf8(name: bytes) -> bool:
    try:
        name.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


class FrameKind(str, Enum):
    METHOD_DELIVER = "METHOD_DELIVER"
    METHOD_OTHER = "METHOD_OTHER"
    HEADER = "HEADER"
    BODY = "BODY"
    HEARTBEAT = "HEARTBEAT"

@dataclass(frozen=True)
class Frame:
    """One protocol frame as seen by the dispatcher.

    Only METHOD_DELIVER frames carry the delivery fields; body bytes are never
    carried here, they are read separately through the session.
    """

    kind: FrameKind
    channel: int = CHANNEL_ID
    delivery_tag: int | None = None
    body_size: int = 0
    exchange: str = ""
    routing_key: str = ""
    redelivered: bool = False

    @staticmethod
    def deliver(
        delivery_tag: int,
        body_size: int,
        *,
        exchange: str = "",
        routing_key: str = "",
        redelivered: bool = False,
    ) -> "Frame":
        return Frame(
            kind=FrameKind.METHOD_DELIVER,
            delivery_tag=delivery_tag,
            body_size=body_size,
            exchange=exchange,
            routing_key=routing_key,
            redelivered=redelivered,
        )

@dataclass(frozen=True)
class QueueSpec:
    """Which queue to consume from and how to provision it."""

    queue: bytes | None = None
    exchange: bytes | None = None
    routing_key: bytes | None = None
    declare: bool = False

    def __post_init__(self) -> None:
        if self.exchange is None and self.routing_key is not None:
            raise ConfigurationError(
                "--routing-key option requires an exchange name to be provided with --exchange"
            )
        if self.queue == b"":
            object.__setattr__(self, "queue", None)
        names = (("--queue", self.queue), ("--exchange", self.exchange), ("--routing-key", self.routing_key))
        for option, name in names:
            if name is not None and not _is_utf8(name):
                raise ConfigurationError(f"{option} name is not valid UTF-8: {stringify_bytes(name)}")


@dataclass(frozen=True)
class ConsumeOptions:
    """Per-invocation consumption settings."""

    command: tuple[str, ...]
    no_ack: bool = False
    count: int | None = None

    def __post_init__(self) -> None:
        if not self.command:
            raise ConfigurationError("consuming command not specified")
        if self.count is not None and self.count < 0:
            raise ConfigurationError("--count must not be negative")

    @property
    def prefetch_count(self) -> int | None:
        """Broker-side prefetch for the limit, or None when no qos call applies."""
        if self.count is not None and 0 < self.count <= MAX_PREFETCH_COUNT:
            return self.count
        return None

    def limit_reached(self, processed: int) -> bool:
        return self.count is not None and processed >= self.count

@dataclass(frozen=True)
class PipelineOutcome:
    """Exit codes of every pipeline stage, in stage order."""

    returncodes: tuple[int, ...]

    @property
    def success(self) -> bool:
        return all(code == 0 for code in self.returncodes)
