"""Port: external command pipelines fed one message body each."""
from __future__ import annotations

from types import TracebackType
from typing import Protocol, Sequence

from pipe_consumer.app.domain.models import PipelineOutcome


class PipelineHandle(Protocol):
    """A running pipeline with a writable input.

    Used as an async context manager; leaving the block reaps every stage.
    """

    async def write(self, data: bytes) -> None: ...

    async def close_input(self) -> None: ...

    async def wait(self) -> PipelineOutcome:
        """Wait for all stages to exit."""
        ...

    async def __aenter__(self) -> "PipelineHandle": ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...


class PipelineLauncher(Protocol):
    async def spawn(self, argv: Sequence[str]) -> PipelineHandle: ...
