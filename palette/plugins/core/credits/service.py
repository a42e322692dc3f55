from typing import TYPE_CHECKING

from fastapi import Request
from structlog import get_logger

from palette.utils.exceptions import InsufficientCreditsError

from .models import CreditBalance, UsageLogEntry
from .repository import CreditRepository

if TYPE_CHECKING:
    from palette.plugins.post_production.queue.models import GenerationRequest

logger = get_logger(__name__)


class CreditService:
    """
    Credit bookkeeping around the generation queue: callers check the
    balance before enqueueing, and the queue's completion hook deducts.
    """

    def __init__(self, repository: CreditRepository):
        self.repo = repository

    async def get_balance(self, user_id: str) -> CreditBalance:
        balance = await self.repo.get_balance(user_id)
        return balance or CreditBalance(user_id=user_id, current_points=0)

    async def ensure_sufficient(
        self, user_id: str, required: int, reserved: int = 0
    ) -> CreditBalance:
        """
        Checks that the balance covers ``required`` on top of ``reserved``,
        the credits already promised to the user's unfinished requests.
        """
        balance = await self.get_balance(user_id)
        self.check_affordable(balance, required, reserved)
        return balance

    @staticmethod
    def check_affordable(balance: CreditBalance, required: int, reserved: int = 0) -> None:
        available = max(balance.current_points - reserved, 0)
        if available < required:
            logger.info(
                "Insufficient credits",
                user_id=balance.user_id,
                required=required,
                available=available,
                reserved=reserved,
            )
            raise InsufficientCreditsError(required, available)

    async def deduct_for_request(self, request: "GenerationRequest") -> None:
        """Completion hook: charge the owner of a completed request."""
        if not request.user_id or not request.credits_used:
            return
        log = logger.bind(user_id=request.user_id, request_id=request.id)

        balance = await self.repo.deduct(request.user_id, request.credits_used)
        if balance is None:
            log.warning(
                "Credit deduction skipped, balance too low",
                credits=request.credits_used,
            )
            return

        await self.repo.log_usage(
            UsageLogEntry(
                user_id=request.user_id,
                request_id=request.id,
                action_type=request.type.value,
                model_name=request.result.model if request.result else None,
                points_consumed=request.credits_used,
                cost_usd=round(request.credits_used * 0.01, 2),
            )
        )
        log.info(
            "Credits deducted",
            credits=request.credits_used,
            remaining=balance.current_points,
        )


def get_credit_service(request: Request) -> CreditService:
    """Dependency to get the shared CreditService from the application state."""
    return request.app.state.credit_service
