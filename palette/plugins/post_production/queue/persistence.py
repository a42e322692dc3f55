"""
Persistence adapters for the generation queue.

The queue hands every changed list of requests to ``QueueStore.save`` without
waiting for it, so the persisted copy may briefly lag the in-memory one.
"""

import json
from abc import ABC, abstractmethod
from typing import List

import redis.asyncio as redis
from pydantic import TypeAdapter, ValidationError
from structlog import get_logger

from .models import GenerationRequest

logger = get_logger(__name__)

STORAGE_VERSION = 1
DEFAULT_STORAGE_KEY = "generation-queue-storage"

_requests_adapter = TypeAdapter(List[GenerationRequest])


def dump_requests(requests: List[GenerationRequest]) -> str:
    return json.dumps(
        {
            "version": STORAGE_VERSION,
            "requests": _requests_adapter.dump_python(requests, mode="json"),
        }
    )


def load_requests(raw: str | bytes | None) -> List[GenerationRequest]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.error("Persisted queue is not valid JSON, starting empty")
        return []
    version = payload.get("version") if isinstance(payload, dict) else None
    if version != STORAGE_VERSION:
        logger.warning(
            "Persisted queue has an unknown version, starting empty",
            version=version,
        )
        return []
    try:
        return _requests_adapter.validate_python(payload.get("requests", []))
    except ValidationError as e:
        logger.error("Persisted queue failed validation, starting empty", error=str(e))
        return []


class QueueStore(ABC):
    @abstractmethod
    async def load(self) -> List[GenerationRequest]:
        """Returns the last saved requests, oldest first."""

    @abstractmethod
    async def save(self, requests: List[GenerationRequest]) -> None:
        """Replaces the saved requests."""


class InMemoryQueueStore(QueueStore):
    """Keeps the serialized payload in memory; used in tests and when disabled."""

    def __init__(self, payload: str | None = None):
        self.payload = payload

    async def load(self) -> List[GenerationRequest]:
        return load_requests(self.payload)

    async def save(self, requests: List[GenerationRequest]) -> None:
        self.payload = dump_requests(requests)


class RedisQueueStore(QueueStore):
    """Stores the whole queue as a single JSON document in Redis."""

    def __init__(self, redis_client: redis.Redis, key: str = DEFAULT_STORAGE_KEY):
        self.redis = redis_client
        self.key = key

    async def load(self) -> List[GenerationRequest]:
        requests = load_requests(await self.redis.get(self.key))
        logger.info("Loaded persisted generation queue", key=self.key, count=len(requests))
        return requests

    async def save(self, requests: List[GenerationRequest]) -> None:
        await self.redis.set(self.key, dump_requests(requests))
