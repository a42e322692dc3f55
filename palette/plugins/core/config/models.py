from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConfigItem(BaseModel):
    """Represents a configuration item stored in the database."""

    key: str = Field(
        ...,
        description="Unique key for the config, e.g., 'post_production/gen4.model'",
    )
    value: Any = Field(
        ..., description="The configuration value. Can be any JSON-serializable type."
    )
    description: str | None = Field(
        None,
        description="Explanation of what this config does and its expected type/values.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
