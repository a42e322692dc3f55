import json
from typing import Any

import redis.asyncio as redis
from structlog import get_logger

from .repository import ConfigRepository

logger = get_logger(__name__)


class ConfigService:
    """
    Runtime configuration with a Redis cache in front of MongoDB.

    Generation handlers read model ids and credit rates through
    ``get_or_create`` so they can be tuned in the database without a
    redeploy; a changed value is picked up once its cache entry expires.
    """

    CACHE_PREFIX = "config:"
    CACHE_TTL_SECONDS = 60

    def __init__(self, repository: ConfigRepository, redis_client: redis.Redis):
        self.repository = repository
        self.redis = redis_client

    async def _cache_get(self, key: str) -> tuple[bool, Any]:
        try:
            cached_value = await self.redis.get(f"{self.CACHE_PREFIX}{key}")
        except Exception as e:
            logger.error("Redis error on GET", key=key, error=str(e))
            return False, None
        if cached_value is None:
            logger.debug("Config cache miss", key=key)
            return False, None
        logger.debug("Config cache hit", key=key)
        return True, json.loads(cached_value)

    async def _cache_set(self, key: str, value: Any) -> None:
        try:
            await self.redis.set(
                f"{self.CACHE_PREFIX}{key}", json.dumps(value), ex=self.CACHE_TTL_SECONDS
            )
        except Exception as e:
            logger.error("Redis error on SET", key=key, error=str(e))

    async def get(self, key: str, default: Any = None) -> Any:
        hit, value = await self._cache_get(key)
        if hit:
            return value
        config_item = await self.repository.get_config(key)
        if not config_item:
            return default
        await self._cache_set(key, config_item.value)
        return config_item.value

    async def get_or_create(
        self, key: str, default: Any, description: str | None = None
    ) -> Any:
        """
        Retrieves a config value, creating it with ``default`` when missing.
        """
        hit, value = await self._cache_get(key)
        if hit:
            return value
        config_item = await self.repository.get_config(key)
        if config_item is None:
            logger.info("Config key not found, creating with default value", key=key)
            config_item = await self.repository.upsert_config(
                key=key,
                value=default,
                description=description or f"Auto-initialized config for {key}",
            )
        await self._cache_set(key, config_item.value)
        return config_item.value
