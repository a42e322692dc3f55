from palette.plugins.post_production.queue.handlers import GenerationHandler
from palette.plugins.post_production.queue.models import GenerationType

from .replicate_models import Gen4ImageInput, Gen4Model, Gen4Settings

DEFAULT_MODELS = {
    Gen4Model.GEN4_IMAGE: "runwayml/gen4-image",
    Gen4Model.GEN4_IMAGE_TURBO: "runwayml/gen4-image-turbo",
}
DEFAULT_CREDITS = {
    Gen4Model.GEN4_IMAGE: 8,
    Gen4Model.GEN4_IMAGE_TURBO: 3,
}


class Gen4Handler(GenerationHandler[Gen4Settings]):
    """Gen-4 compose: the prompt refers to references by their ``@tag``."""

    generation_type = GenerationType.GEN4_CREATE
    input_model = Gen4Settings

    async def resolve_model(self, settings: Gen4Settings) -> str:
        return await self.config.get_or_create(
            f"post_production/gen4.{settings.model.value}.model",
            DEFAULT_MODELS[settings.model],
            f"Replicate model used for {settings.model.value}.",
        )

    def build_payload(self, prompt: str, settings: Gen4Settings) -> Gen4ImageInput:
        return Gen4ImageInput(
            prompt=prompt,
            reference_images=settings.reference_images,
            reference_tags=settings.reference_tags or None,
            aspect_ratio=settings.aspect_ratio,
            resolution=settings.resolution,
            seed=settings.seed,
        )

    async def estimate_credits(self, settings: Gen4Settings, outputs: int = 1) -> int:
        per_image = await self.config.get_or_create(
            f"post_production/gen4.{settings.model.value}.credits_per_image",
            DEFAULT_CREDITS[settings.model],
            f"Credits charged per {settings.model.value} output.",
        )
        return int(per_image) * max(outputs, 1)
