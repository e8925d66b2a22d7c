"""Command line entry point: consume messages and pipe each body through a command."""
from __future__ import annotations

import asyncio
import os
import signal
from typing import Any, List, Optional

import typer
from loguru import logger
from pydantic import ValidationError
from typing_extensions import Annotated

from pipe_consumer.app.application.dispatcher import DeliveryDispatcher
from pipe_consumer.app.application.provisioner import provision
from pipe_consumer.app.composition import create_consumer_dependencies
from pipe_consumer.app.config.settings import Settings
from pipe_consumer.app.core import SERVICE_NAME
from pipe_consumer.app.core.logging import configure_logging
from pipe_consumer.app.domain.errors import ConsumerError
from pipe_consumer.app.domain.models import ConsumeOptions, QueueSpec
from pipe_consumer.app.infrastructure.process.subprocess_pipeline import split_stages

app = typer.Typer(add_completion=False)


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _as_bytes(value: Optional[str]) -> Optional[bytes]:
    # fsencode undoes surrogateescape, so names that were not valid UTF-8 survive.
    return os.fsencode(value) if value is not None else None


async def run_consumer(settings: Settings, spec: QueueSpec, options: ConsumeOptions) -> int:
    """Provision, consume until done, close. Returns the number of deliveries handled."""
    shutdown = asyncio.Event()

    def request_shutdown() -> None:
        if not shutdown.is_set():
            _log("shutdown_signal")
            shutdown.set()

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
            installed.append(sig)
        except NotImplementedError:
            pass

    try:
        async with create_consumer_dependencies(settings) as deps:
            queue = await provision(deps.session, spec)
            dispatcher = DeliveryDispatcher(deps.session, deps.launcher, options, shutdown=shutdown)
            return await dispatcher.run(queue)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@app.command(
    context_settings={"allow_interspersed_args": False},
    help="Consume messages from a queue and run COMMAND once per message, "
    "with the message body on its standard input. Separate pipeline stages with a '|' argument.",
)
def consume(
    ctx: typer.Context,
    command: Annotated[
        Optional[List[str]],
        typer.Argument(help="The command (and its arguments) to run for each message", show_default=False),
    ] = None,
    queue: Annotated[Optional[str], typer.Option("--queue", "-q", help="the queue to consume from")] = None,
    exchange: Annotated[
        Optional[str], typer.Option("--exchange", "-e", help="bind the queue to this exchange")
    ] = None,
    routing_key: Annotated[
        Optional[str], typer.Option("--routing-key", "-r", help="the routing key to bind with")
    ] = None,
    declare: Annotated[bool, typer.Option("--declare", "-d", help="declare an exclusive queue")] = False,
    no_ack: Annotated[bool, typer.Option("--no-ack", "-A", help="consume in no-ack mode")] = False,
    count: Annotated[
        Optional[int],
        typer.Option("--count", "-c", min=0, help="stop consuming after this many messages are consumed"),
    ] = None,
    url: Annotated[Optional[str], typer.Option("--url", "-u", help="the AMQP URL to connect to")] = None,
    server: Annotated[Optional[str], typer.Option("--server", "-s", help="the AMQP server to connect to")] = None,
    port: Annotated[Optional[int], typer.Option("--port", help="the port to connect on")] = None,
    vhost: Annotated[Optional[str], typer.Option("--vhost", help="the vhost to use when connecting")] = None,
    username: Annotated[Optional[str], typer.Option("--username", help="the username to login with")] = None,
    password: Annotated[Optional[str], typer.Option("--password", help="the password to login with")] = None,
    heartbeat: Annotated[
        Optional[int], typer.Option("--heartbeat", min=0, help="heartbeat interval in seconds, 0 disables")
    ] = None,
    frame_max: Annotated[Optional[int], typer.Option("--frame-max", help="maximum frame size in bytes")] = None,
) -> None:
    if not command:
        typer.echo("consuming command not specified", err=True)
        typer.echo(ctx.get_usage(), err=True)
        raise typer.Exit(1)

    overrides = {
        "amqp_url": url,
        "broker_host": server,
        "broker_port": port,
        "broker_vhost": vhost,
        "broker_user": username,
        "broker_password": password,
        "heartbeat_seconds": heartbeat,
        "frame_max": frame_max,
    }
    try:
        settings = Settings(**{key: value for key, value in overrides.items() if value is not None})
    except ValidationError as e:
        typer.echo(f"invalid configuration: {e}", err=True)
        raise typer.Exit(1)

    configure_logging(settings.log_level, serialize=settings.log_serialize)

    try:
        spec = QueueSpec(
            queue=_as_bytes(queue),
            exchange=_as_bytes(exchange),
            routing_key=_as_bytes(routing_key),
            declare=declare,
        )
        options = ConsumeOptions(command=tuple(command), no_ack=no_ack, count=count)
        split_stages(options.command)
        processed = asyncio.run(run_consumer(settings, spec, options))
    except ConsumerError as e:
        logger.bind(service_name=SERVICE_NAME, event="consumer_failed", error_type=type(e).__name__).error(
            "{}", e
        )
        raise typer.Exit(1)
    except KeyboardInterrupt:
        _log("consumer_interrupted")
        return
    except Exception as e:
        logger.exception("consumer failed: {}", e)
        raise

    _log("consumer_finished", processed=processed)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
