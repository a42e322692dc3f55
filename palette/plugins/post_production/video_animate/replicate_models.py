"""Pydantic models representing the INPUT schema for bytedance/seedance-1-*."""

from enum import Enum

from pydantic import BaseModel, Field


class SeedanceModel(str, Enum):
    LITE = "seedance-lite"
    PRO = "seedance-pro"


class VideoResolution(str, Enum):
    P480 = "480p"
    P720 = "720p"
    P1080 = "1080p"


class VideoAnimateSettings(BaseModel):
    """``input_data`` accepted for a video-animate request."""

    model: SeedanceModel = SeedanceModel.LITE
    image: str | None = Field(default=None, description="Optional start frame.")
    duration: int = Field(default=5, ge=3, le=12)
    resolution: VideoResolution = VideoResolution.P720
    aspect_ratio: str = "16:9"
    camera_fixed: bool = False
    seed: int | None = None


class SeedanceInput(BaseModel):
    """Payload for submitting a job to bytedance/seedance-1-lite or -pro."""

    prompt: str
    image: str | None = None
    duration: int
    resolution: VideoResolution
    aspect_ratio: str
    camera_fixed: bool
    seed: int | None = None
