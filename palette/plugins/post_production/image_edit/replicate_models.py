"""Pydantic models representing the INPUT schema for qwen/qwen-image-edit."""

from enum import Enum

from pydantic import BaseModel, Field


class OutputFormat(str, Enum):
    WEBP = "webp"
    JPG = "jpg"
    PNG = "png"


class ImageEditSettings(BaseModel):
    """``input_data`` accepted for an image-edit request."""

    image: str = Field(..., min_length=1, description="URL or data URI of the image to edit.")
    seed: int | None = None
    go_fast: bool = True
    aspect_ratio: str | None = None
    output_format: OutputFormat = OutputFormat.WEBP
    output_quality: int = Field(default=95, ge=0, le=100)


class QwenImageEditInput(ImageEditSettings):
    """Payload for submitting a job to qwen/qwen-image-edit."""

    prompt: str
