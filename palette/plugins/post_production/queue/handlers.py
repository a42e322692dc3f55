from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ValidationError
from structlog import get_logger

from palette.plugins.core.config.service import ConfigService
from palette.utils.cancellation import CancellationToken
from palette.utils.exceptions import BadRequestError
from palette.utils.replicate_client import ReplicateClient

from .models import GenerationRequest, GenerationResult, GenerationType

logger = get_logger(__name__)

InputT = TypeVar("InputT", bound=BaseModel)

# Anything the queue can dispatch a request to.
Handler = Callable[[GenerationRequest, CancellationToken], Awaitable[GenerationResult]]


class GenerationHandler(ABC, Generic[InputT]):
    """
    Base class for the per-type handlers the queue dispatches to.

    Subclasses declare their ``input_model`` (the schema of
    ``GenerationRequest.input_data``), pick the Replicate model, build the
    prediction payload and price the job.
    """

    generation_type: ClassVar[GenerationType]
    input_model: ClassVar[type[BaseModel]]

    def __init__(self, replicate: ReplicateClient, config: ConfigService):
        self.replicate = replicate
        self.config = config

    def parse_input(self, input_data: dict[str, Any]) -> InputT:
        try:
            return self.input_model.model_validate(input_data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
                for err in e.errors()
            )
            raise BadRequestError(
                f"Invalid input for {self.generation_type.value}: {problems}"
            ) from e

    @abstractmethod
    async def resolve_model(self, settings: InputT) -> str:
        """Replicate model id for these settings."""

    @abstractmethod
    def build_payload(self, prompt: str, settings: InputT) -> BaseModel:
        """Prediction input sent to Replicate."""

    @abstractmethod
    async def estimate_credits(self, settings: InputT, outputs: int = 1) -> int:
        """Credit cost of a job producing ``outputs`` results."""

    async def run(
        self, request: GenerationRequest, token: CancellationToken
    ) -> GenerationResult:
        settings = self.parse_input(request.input_data)
        model = await self.resolve_model(settings)
        payload = self.build_payload(request.prompt, settings)

        prediction, urls = await self.replicate.run(model, payload, token)

        credits = await self.estimate_credits(settings, outputs=len(urls))
        logger.info(
            "Generation finished",
            generation_type=self.generation_type.value,
            model=model,
            outputs=len(urls),
            credits=credits,
        )
        return GenerationResult(
            urls=urls,
            prediction_id=prediction.id,
            model=model,
            credits=credits,
        )

    async def __call__(
        self, request: GenerationRequest, token: CancellationToken
    ) -> GenerationResult:
        return await self.run(request, token)
