"""AMQP session factory: selects implementation from config. Only place that imports concrete sessions."""
from __future__ import annotations

from pipe_consumer.app.config.settings import Settings
from pipe_consumer.app.domain.errors import ConfigurationError
from pipe_consumer.app.infrastructure.messaging.rabbitmq.aio_pika_session import AioPikaSession
from pipe_consumer.app.ports.amqp_session import AmqpSession


def create_amqp_session(settings: Settings) -> AmqpSession:
    backend = settings.session_backend.strip().lower()

    if backend == "rabbitmq":
        return AioPikaSession(settings)

    raise ConfigurationError(f"Unsupported session backend: {backend}")
