from typing import Mapping

from fastapi import Request
from structlog import get_logger

from palette.plugins.core.credits.service import CreditService
from palette.utils.exceptions import BadRequestError

from .generation_queue import GenerationQueue
from .handlers import GenerationHandler
from .models import EnqueueRequest, EnqueueResponse, GenerationType, RequestStatus

logger = get_logger(__name__)


class QueueService:
    """
    Entry point for new generation requests. Input is validated and the
    user's balance checked here, so the queue only ever sees affordable,
    well-formed jobs.
    """

    def __init__(
        self,
        queue: GenerationQueue,
        handlers: Mapping[GenerationType, GenerationHandler],
        credit_service: CreditService,
    ):
        self.queue = queue
        self.handlers = dict(handlers)
        self.credits = credit_service

    async def enqueue(self, user_id: str, payload: EnqueueRequest) -> EnqueueResponse:
        handler = self.handlers.get(payload.type)
        if handler is None:
            raise BadRequestError(f"Unknown request type: {payload.type.value}")

        settings = handler.parse_input(payload.input_data)
        required = await handler.estimate_credits(settings)
        balance = await self.credits.get_balance(user_id)
        # No await from here on: the reservation read and the enqueue that
        # extends it happen together.
        self.credits.check_affordable(
            balance, required, reserved=self.queue.get_reserved_credits(user_id)
        )
        request_id = self.queue.add_to_queue(
            payload.type,
            payload.prompt,
            settings.model_dump(mode="json", exclude_none=True),
            user_id=user_id,
            credits_required=required,
        )
        logger.info(
            "Generation request accepted",
            request_id=request_id,
            user_id=user_id,
            generation_type=payload.type.value,
            credits_required=required,
        )
        return EnqueueResponse(
            id=request_id, status=RequestStatus.QUEUED, credits_required=required
        )


def get_queue_service(request: Request) -> QueueService:
    """Dependency to get the shared QueueService from the application state."""
    return request.app.state.queue_service
