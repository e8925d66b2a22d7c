"""
Pipeline adapter over asyncio subprocesses.

The command is split into stages on literal "|" arguments. The first stage
reads the message body from a pipe owned by this handle; each later stage reads
the previous stage's stdout through an OS pipe; the last stage inherits our
stdout and stderr. Leaving the handle's context reaps every stage, killing any
that are still running when the block is left on an error path.
"""
from __future__ import annotations

import asyncio
import os
from types import TracebackType
from typing import Any, Sequence

from loguru import logger

from pipe_consumer.app.constants import STAGE_SEPARATOR
from pipe_consumer.app.core import SERVICE_NAME
from pipe_consumer.app.domain.errors import ConfigurationError, PipelineIOError, PipelineSpawnError
from pipe_consumer.app.domain.models import PipelineOutcome


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def split_stages(argv: Sequence[str]) -> list[list[str]]:
    """Split argv on "|" tokens; every stage must name a command."""
    stages: list[list[str]] = [[]]
    for arg in argv:
        if arg == STAGE_SEPARATOR:
            stages.append([])
        else:
            stages[-1].append(arg)
    if any(not stage for stage in stages):
        raise ConfigurationError(f"empty pipeline stage in command: {' '.join(argv)!r}")
    return stages


class SubprocessPipeline:
    """PipelineHandle implementation"""

    def __init__(self, processes: list[asyncio.subprocess.Process]) -> None:
        self._processes = processes
        self._stdin = processes[0].stdin
        self._outcome: PipelineOutcome | None = None

    @property
    def pids(self) -> list[int]:
        return [proc.pid for proc in self._processes]

    async def write(self, data: bytes) -> None:
        if self._stdin is None:
            raise PipelineIOError("pipeline input already closed")
        try:
            self._stdin.write(data)
            await self._stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise PipelineIOError(f"writing to pipeline: {e}") from e

    async def close_input(self) -> None:
        stdin, self._stdin = self._stdin, None
        if stdin is None:
            return
        try:
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise PipelineIOError(f"closing pipeline input: {e}") from e

    async def wait(self) -> PipelineOutcome:
        if self._outcome is None:
            codes = [await proc.wait() for proc in self._processes]
            self._outcome = PipelineOutcome(returncodes=tuple(codes))
        return self._outcome

    async def _abort(self) -> None:
        if self._stdin is not None:
            self._stdin.close()
            self._stdin = None
        for proc in self._processes:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
        await self.wait()

    async def __aenter__(self) -> "SubprocessPipeline":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            _log("pipeline_aborted", pids=self.pids, error=str(exc))
            await self._abort()
            return
        await self.close_input()
        await self.wait()


class SubprocessPipelineLauncher:
    """PipelineLauncher implementation"""

    async def spawn(self, argv: Sequence[str]) -> SubprocessPipeline:
        stages = split_stages(argv)
        processes: list[asyncio.subprocess.Process] = []
        open_fds: list[int] = []
        upstream: int | None = None
        try:
            for index, stage in enumerate(stages):
                last = index == len(stages) - 1
                downstream: int | None = None
                if not last:
                    read_end, downstream = os.pipe()
                    open_fds.extend((read_end, downstream))
                proc = await asyncio.create_subprocess_exec(
                    *stage,
                    stdin=asyncio.subprocess.PIPE if upstream is None else upstream,
                    stdout=downstream,
                )
                processes.append(proc)
                # The children hold their own copies of these descriptors now.
                for fd in (upstream, downstream):
                    if fd is not None:
                        os.close(fd)
                        open_fds.remove(fd)
                upstream = None if last else read_end
        except OSError as e:
            for fd in open_fds:
                os.close(fd)
            if processes and processes[0].stdin is not None:
                processes[0].stdin.close()
            for proc in processes:
                if proc.returncode is None:
                    proc.kill()
                await proc.wait()
            raise PipelineSpawnError(f"{' '.join(argv)}: {e}") from e
        return SubprocessPipeline(processes)
