import structlog
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

logger = structlog.get_logger(__name__)

INDEX_DEFINITIONS = {
    "configurations": [
        {"keys": [("key", ASCENDING)], "options": {"unique": True}},
    ],
    "user_credits": [
        {"keys": [("user_id", ASCENDING)], "options": {"unique": True}},
    ],
    "usage_log": [
        {"keys": [("user_id", ASCENDING), ("created_at", DESCENDING)], "options": {}},
        {"keys": [("request_id", ASCENDING)], "options": {}},
    ],
}


async def ensure_indexes(db: AsyncIOMotorDatabase):
    """
    Checks and creates all defined MongoDB indexes if they don't exist.

    Idempotent and safe to run on every application startup.
    """
    logger.info("Starting database index verification and creation...")
    for collection_name, indexes in INDEX_DEFINITIONS.items():
        try:
            collection = db[collection_name]
            for index in indexes:
                keys = index["keys"]
                await collection.create_index(
                    keys,
                    background=True,
                    name=f"{collection_name}_{'_'.join([k[0] for k in keys])}_idx",
                    **index.get("options", {}),
                )
            logger.info(
                f"Indexes ensured for collection '{collection_name}'",
                count=len(indexes),
            )
        except PyMongoError as e:
            logger.error(
                "Failed to create indexes for collection",
                collection=collection_name,
                error=str(e),
            )
    logger.info("Database index verification complete.")
