from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from structlog import get_logger

from palette.utils.exceptions import ServiceError

from .models import CreditBalance, UsageLogEntry, utcnow

logger = get_logger(__name__)


class CreditRepository:
    """Reads and updates the ``user_credits`` and ``usage_log`` collections."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self._credits = db["user_credits"]
        self._usage = db["usage_log"]

    async def get_balance(self, user_id: str) -> CreditBalance | None:
        try:
            doc = await self._credits.find_one({"user_id": user_id})
        except PyMongoError as e:
            logger.error("DB error reading credits", user_id=user_id, error=str(e))
            raise ServiceError("Unable to verify user credits") from e
        if not doc:
            return None
        return CreditBalance(user_id=user_id, current_points=doc["current_points"])

    async def deduct(self, user_id: str, amount: int) -> CreditBalance | None:
        """
        Atomically subtracts ``amount``; returns ``None`` when the balance is
        missing or too small, leaving it untouched.
        """
        try:
            doc = await self._credits.find_one_and_update(
                {"user_id": user_id, "current_points": {"$gte": amount}},
                {"$inc": {"current_points": -amount}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error("DB error deducting credits", user_id=user_id, error=str(e))
            raise ServiceError("Credit deduction failed") from e
        if not doc:
            return None
        return CreditBalance(user_id=user_id, current_points=doc["current_points"])

    async def log_usage(self, entry: UsageLogEntry) -> str:
        try:
            result = await self._usage.insert_one(entry.model_dump())
            return str(result.inserted_id)
        except PyMongoError as e:
            logger.error("DB error writing usage log", user_id=entry.user_id, error=str(e))
            raise ServiceError("Failed to record credit usage") from e
