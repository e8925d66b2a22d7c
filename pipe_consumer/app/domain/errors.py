"""Fatal error taxonomy. Anything raised from here unwinds to the CLI handler."""
from __future__ import annotations


class ConsumerError(Exception):
    """Base for failures that end the run with exit status 1."""


class ConfigurationError(ConsumerError):
    """Invalid invocation, detected before any network I/O."""


class RpcError(ConsumerError):
    """The broker rejected a synchronous request (declare, bind, qos, consume, ack)."""

    def __init__(self, operation: str, reply: str) -> None:
        super().__init__(f"{operation}: {reply}")
        self.operation = operation
        self.reply = reply


class TransportError(ConsumerError):
    """The connection failed while waiting for or reading frames."""

    def __init__(self, context: str, reason: str) -> None:
        super().__init__(f"{context}: {reason}")
        self.context = context
        self.reason = reason


class PipelineSpawnError(ConsumerError):
    """A pipeline stage could not be started."""


class PipelineIOError(ConsumerError):
    """Writing the message body into the pipeline failed."""
