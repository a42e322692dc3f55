from structlog import get_logger

from palette.plugins.post_production.queue.handlers import GenerationHandler
from palette.plugins.post_production.queue.models import GenerationType

from .replicate_models import ImageEditSettings, QwenImageEditInput

logger = get_logger(__name__)


class ImageEditHandler(GenerationHandler[ImageEditSettings]):
    generation_type = GenerationType.IMAGE_EDIT
    input_model = ImageEditSettings

    async def resolve_model(self, settings: ImageEditSettings) -> str:
        return await self.config.get_or_create(
            "post_production/image_edit.model",
            "qwen/qwen-image-edit",
            "Replicate model used for image edits.",
        )

    def build_payload(self, prompt: str, settings: ImageEditSettings) -> QwenImageEditInput:
        return QwenImageEditInput(prompt=prompt, **settings.model_dump())

    async def estimate_credits(self, settings: ImageEditSettings, outputs: int = 1) -> int:
        per_image = await self.config.get_or_create(
            "post_production/image_edit.credits_per_image",
            3,
            "Credits charged per edited image.",
        )
        return int(per_image) * max(outputs, 1)
