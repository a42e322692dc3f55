"""
Pydantic models representing the generic data structures of the Replicate
predictions API. Handler-specific input schemas live beside each handler.
"""

from typing import Any, List, Literal

from pydantic import BaseModel, Field

PredictionStatus = Literal["starting", "processing", "succeeded", "failed", "canceled"]

TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})


class PredictionMetrics(BaseModel):
    predict_time: float | None = None


class ReplicatePrediction(BaseModel):
    """
    A prediction as returned by create/get. ``output`` is a single URL or a
    list of URLs depending on the model.
    """

    id: str
    status: PredictionStatus
    model: str | None = None
    version: str | None = None
    input: dict[str, Any] | None = None
    output: str | List[str] | None = None
    error: str | None = None
    logs: str | None = None
    metrics: PredictionMetrics | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def output_urls(self) -> List[str]:
        if self.output is None:
            return []
        if isinstance(self.output, list):
            return list(self.output)
        return [self.output]


class PollPolicy(BaseModel):
    """
    How often to re-fetch a running prediction.

    The delay before poll ``n`` (1-based) is
    ``min(interval * backoff_factor ** (n - 1), max_interval)``; a factor of
    1.0 polls at a fixed interval.
    """

    interval: float = Field(default=2.0, ge=0)
    backoff_factor: float = Field(default=1.5, ge=1.0)
    max_interval: float = Field(default=10.0, ge=0)
    max_attempts: int = Field(default=60, ge=1)

    def delay_for(self, attempt: int) -> float:
        return min(self.interval * self.backoff_factor ** (attempt - 1), self.max_interval)
