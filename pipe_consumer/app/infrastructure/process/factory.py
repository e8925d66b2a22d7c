"""Pipeline launcher factory."""
from __future__ import annotations

from pipe_consumer.app.infrastructure.process.subprocess_pipeline import SubprocessPipelineLauncher
from pipe_consumer.app.ports.pipeline import PipelineLauncher


def create_pipeline_launcher() -> PipelineLauncher:
    return SubprocessPipelineLauncher()
