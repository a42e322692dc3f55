"""Pydantic models representing the INPUT schema for runwayml/gen4-image."""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field, model_validator


class Gen4Model(str, Enum):
    GEN4_IMAGE = "gen4-image"
    GEN4_IMAGE_TURBO = "gen4-image-turbo"


class Gen4Resolution(str, Enum):
    P720 = "720p"
    P1080 = "1080p"


class Gen4Settings(BaseModel):
    """``input_data`` accepted for a gen4-create request."""

    model: Gen4Model = Gen4Model.GEN4_IMAGE
    reference_images: List[str] = Field(..., min_length=1, max_length=3)
    reference_tags: List[str] = Field(default_factory=list)
    aspect_ratio: str = "16:9"
    resolution: Gen4Resolution = Gen4Resolution.P1080
    seed: int | None = None

    @model_validator(mode="after")
    def check_tags(self) -> "Gen4Settings":
        if len(self.reference_tags) > len(self.reference_images):
            raise ValueError("reference_tags cannot outnumber reference_images")
        return self


class Gen4ImageInput(BaseModel):
    """Payload for submitting a job to runwayml/gen4-image(-turbo)."""

    prompt: str
    reference_images: List[str]
    reference_tags: List[str] | None = None
    aspect_ratio: str
    resolution: Gen4Resolution
    seed: int | None = None
