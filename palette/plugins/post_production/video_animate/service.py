import math

from palette.plugins.post_production.queue.handlers import GenerationHandler
from palette.plugins.post_production.queue.models import GenerationType

from .replicate_models import SeedanceInput, SeedanceModel, VideoAnimateSettings

DEFAULT_MODELS = {
    SeedanceModel.LITE: "bytedance/seedance-1-lite",
    SeedanceModel.PRO: "bytedance/seedance-1-pro",
}
DEFAULT_CREDITS_PER_SECOND = {
    SeedanceModel.LITE: 20,
    SeedanceModel.PRO: 40,
}
RESOLUTION_MULTIPLIERS = {"480p": 1.0, "720p": 1.5, "1080p": 2.0}


class VideoAnimateHandler(GenerationHandler[VideoAnimateSettings]):
    """
    Seedance video generation. Priced per second of video, scaled by the
    output resolution; one job always produces a single video.
    """

    generation_type = GenerationType.VIDEO_ANIMATE
    input_model = VideoAnimateSettings

    async def resolve_model(self, settings: VideoAnimateSettings) -> str:
        return await self.config.get_or_create(
            f"post_production/video_animate.{settings.model.value}.model",
            DEFAULT_MODELS[settings.model],
            f"Replicate model used for {settings.model.value}.",
        )

    def build_payload(self, prompt: str, settings: VideoAnimateSettings) -> SeedanceInput:
        return SeedanceInput(
            prompt=prompt.strip(),
            **settings.model_dump(exclude={"model"}),
        )

    async def estimate_credits(
        self, settings: VideoAnimateSettings, outputs: int = 1
    ) -> int:
        per_second = await self.config.get_or_create(
            f"post_production/video_animate.{settings.model.value}.credits_per_second",
            DEFAULT_CREDITS_PER_SECOND[settings.model],
            f"Credits charged per second of {settings.model.value} video.",
        )
        multiplier = RESOLUTION_MULTIPLIERS[settings.resolution.value]
        return math.ceil(float(per_second) * settings.duration * multiplier)
