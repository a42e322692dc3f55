from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from palette.utils.replicate_models import PollPolicy

from .persistence import DEFAULT_STORAGE_KEY


class QueueSettings(BaseSettings):
    """
    Settings of the generation queue plugin, merged into the application
    settings by the PluginManager.
    """

    poll_interval_seconds: float = Field(default=2.0, ge=0, alias="POLL_INTERVAL_SECONDS")
    poll_backoff_factor: float = Field(default=1.5, ge=1.0, alias="POLL_BACKOFF_FACTOR")
    poll_max_interval_seconds: float = Field(
        default=10.0, ge=0, alias="POLL_MAX_INTERVAL_SECONDS"
    )
    poll_max_attempts: int = Field(default=60, ge=1, alias="POLL_MAX_ATTEMPTS")
    replicate_prefer_wait_seconds: int | None = Field(
        default=None, ge=1, le=60, alias="REPLICATE_PREFER_WAIT_SECONDS"
    )

    queue_persistence_enabled: bool = Field(default=True, alias="QUEUE_PERSISTENCE_ENABLED")
    queue_storage_key: str = Field(default=DEFAULT_STORAGE_KEY, alias="QUEUE_STORAGE_KEY")
    queue_events_keepalive_seconds: float = Field(
        default=15.0, gt=0, alias="QUEUE_EVENTS_KEEPALIVE_SECONDS"
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    def poll_policy(self) -> PollPolicy:
        return PollPolicy(
            interval=self.poll_interval_seconds,
            backoff_factor=self.poll_backoff_factor,
            max_interval=self.poll_max_interval_seconds,
            max_attempts=self.poll_max_attempts,
        )
