from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from palette.plugins.post_production.queue.generation_queue import (
        GenerationQueue,
    )


async def require_user_id(request: Request) -> str:
    """Dependency to require the ``x-user-id`` header set by the frontend."""
    user_id = request.headers.get("x-user-id")
    if not user_id:
        raise HTTPException(status_code=400, detail="The x-user-id header is required")
    return user_id


def get_generation_queue(request: Request) -> "GenerationQueue":
    """Dependency to get the application's GenerationQueue."""
    return request.app.state.generation_queue
