from typing import Annotated

from fastapi import APIRouter, Depends

from palette.utils.dependencies import require_user_id

from .models import CreditBalance
from .service import CreditService, get_credit_service

router = APIRouter()


@router.get(
    "/balance",
    response_model=CreditBalance,
    summary="Current credit balance of the calling user",
)
async def get_balance(
    user_id: Annotated[str, Depends(require_user_id)],
    service: Annotated[CreditService, Depends(get_credit_service)],
):
    return await service.get_balance(user_id)
