from typing import Optional
from urllib.parse import quote

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pipe_consumer.app.constants import FRAME_OVERHEAD


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # When set, wins over the individual broker_* fields.
    amqp_url: Optional[str] = Field(None, validation_alias="AMQP_URL")
    broker_host: str = Field("localhost", validation_alias="AMQP_HOST")
    broker_port: int = Field(5672, validation_alias="AMQP_PORT")
    broker_vhost: str = Field("/", validation_alias="AMQP_VHOST")
    broker_user: str = Field("guest", validation_alias="AMQP_USER")
    broker_password: str = Field("guest", validation_alias="AMQP_PASSWORD")
    heartbeat_seconds: int = Field(0, ge=0, validation_alias="AMQP_HEARTBEAT")
    frame_max: int = Field(131072, ge=4096, validation_alias="AMQP_FRAME_MAX")

    session_backend: str = Field("rabbitmq", validation_alias="SESSION_BACKEND")

    # Only the initial connect is ever retried; one attempt means fail fast.
    max_connection_attempts: int = Field(1, ge=1, validation_alias="MAX_CONNECTION_ATTEMPTS")
    initial_backoff_seconds: float = Field(1.0, validation_alias="INITIAL_BACKOFF_SECONDS")
    max_backoff_seconds: float = Field(30.0, validation_alias="MAX_BACKOFF_SECONDS")
    backoff_multiplier: float = Field(2.0, validation_alias="BACKOFF_MULTIPLIER")

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    log_serialize: bool = Field(False, validation_alias="LOG_SERIALIZE")

    @property
    def body_fragment_size(self) -> int:
        return self.frame_max - FRAME_OVERHEAD

    def build_amqp_url(self) -> str:
        if self.amqp_url:
            return self.amqp_url
        return (
            f"amqp://{quote(self.broker_user, safe='')}:{quote(self.broker_password, safe='')}"
            f"@{self.broker_host}:{self.broker_port}/{quote(self.broker_vhost, safe='')}"
            f"?heartbeat={self.heartbeat_seconds}&frame_max={self.frame_max}"
        )
