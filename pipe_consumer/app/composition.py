"""Composition root: build and lifecycle-manage concrete dependencies.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle. The session is closed on every exit path.
"""
from __future__ import annotations

from types import TracebackType
from typing import Any

from loguru import logger

from pipe_consumer.app.config.settings import Settings
from pipe_consumer.app.core import SERVICE_NAME
from pipe_consumer.app.infrastructure.messaging.factory import create_amqp_session
from pipe_consumer.app.infrastructure.process.factory import create_pipeline_launcher
from pipe_consumer.app.ports.amqp_session import AmqpSession
from pipe_consumer.app.ports.pipeline import PipelineLauncher


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class ConsumerDependencies:
    """Holds the wired session and pipeline launcher."""

    def __init__(self, *, settings: Settings) -> None:
        self._settings = settings
        self._session: AmqpSession | None = None
        self._launcher: PipelineLauncher | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def session(self) -> AmqpSession:
        if self._session is None:
            raise RuntimeError("session is not initialized")
        return self._session

    @property
    def launcher(self) -> PipelineLauncher:
        if self._launcher is None:
            raise RuntimeError("launcher is not initialized")
        return self._launcher

    async def connect(self) -> None:
        self._launcher = create_pipeline_launcher()
        self._session = create_amqp_session(self._settings)
        try:
            await self._session.connect()
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        if self._session is not None:
            try:
                await self._session.close()
            except Exception as exc:
                logger.warning("session close failed: {}", exc)
            self._session = None
        self._launcher = None
        _log("dependencies_closed")

    async def __aenter__(self) -> "ConsumerDependencies":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


def create_consumer_dependencies(settings: Settings | None = None) -> ConsumerDependencies:
    return ConsumerDependencies(settings=settings or Settings())
