from datetime import datetime, timezone
from enum import Enum
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationType(str, Enum):
    IMAGE_EDIT = "image-edit"
    GEN4_CREATE = "gen4-create"
    VIDEO_ANIMATE = "video-animate"


class RequestStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED)


class GenerationResult(BaseModel):
    """Output of one generation: URLs in the order the provider returned them."""

    model_config = ConfigDict(frozen=True)

    urls: List[str] = Field(..., min_length=1)
    prediction_id: str | None = None
    model: str | None = None
    credits: int | None = None

    @model_validator(mode="before")
    @classmethod
    def single_url(cls, data: Any) -> Any:
        if isinstance(data, dict) and "urls" not in data and "url" in data:
            data = {**data, "urls": [data["url"]]}
            data.pop("url")
        return data


class GenerationRequest(BaseModel):
    """
    One unit of generation work. Instances are frozen; the queue replaces an
    entry on every change so snapshots never mutate.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: GenerationType
    status: RequestStatus = RequestStatus.QUEUED
    prompt: str
    input_data: dict[str, Any] = Field(default_factory=dict)
    result: GenerationResult | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    credits_required: int | None = None
    credits_used: int | None = None
    user_id: str | None = None


class QueueStats(BaseModel):
    queued: int
    processing: int
    completed: int
    failed: int


class QueueSnapshot(BaseModel):
    requests: List[GenerationRequest]
    is_processing: bool
    currently_processing: str | None


class EnqueueRequest(BaseModel):
    type: GenerationType
    prompt: str = Field(..., min_length=5, max_length=2000)
    input_data: dict[str, Any] = Field(default_factory=dict)


class EnqueueResponse(BaseModel):
    id: str
    status: RequestStatus
    credits_required: int
