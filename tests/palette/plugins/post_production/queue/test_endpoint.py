from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from palette.main import service_exception_handler
from palette.plugins import PluginManager
from palette.plugins.post_production.queue.config import QueueSettings
from palette.plugins.post_production.queue.endpoint import router, snapshot_events
from palette.plugins.post_production.queue.generation_queue import GenerationQueue
from palette.plugins.post_production.queue.models import (
    EnqueueResponse,
    GenerationRequest,
    GenerationType,
    QueueSnapshot,
    QueueStats,
    RequestStatus,
)
from palette.plugins.post_production.queue.service import get_queue_service
from palette.utils.dependencies import get_generation_queue
from palette.utils.exceptions import InsufficientCreditsError, ServiceError

PREFIX = "/post_production/queue"
HEADERS = {"x-user-id": "user-1"}


@pytest.fixture
def mock_queue() -> MagicMock:
    """Provides a GenerationQueue mock with a single queued request."""
    mock = MagicMock(spec=GenerationQueue)
    request = GenerationRequest(
        id="req_1_abc", type=GenerationType.IMAGE_EDIT, prompt="make it snow"
    )
    mock.get_request.side_effect = lambda rid: request if rid == request.id else None
    mock.remove_from_queue.side_effect = lambda rid: rid == request.id
    mock.snapshot.return_value = QueueSnapshot(
        requests=[request], is_processing=False, currently_processing=None
    )
    mock.stats.return_value = QueueStats(queued=1, processing=0, completed=0, failed=0)
    mock.clear_completed.return_value = 0
    return mock


@pytest.fixture
def mock_queue_service() -> MagicMock:
    """Provides a mock for the QueueService."""
    mock = MagicMock()
    mock.enqueue = AsyncMock(
        return_value=EnqueueResponse(
            id="req_2_def", status=RequestStatus.QUEUED, credits_required=8
        )
    )
    return mock


@pytest.fixture
def client(mock_queue: MagicMock, mock_queue_service: MagicMock) -> TestClient:
    app = FastAPI()
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.include_router(router, prefix=PREFIX)
    app.dependency_overrides[get_generation_queue] = lambda: mock_queue
    app.dependency_overrides[get_queue_service] = lambda: mock_queue_service
    return TestClient(app)


def test_enqueue_returns_accepted(client: TestClient, mock_queue_service: MagicMock):
    response = client.post(
        f"{PREFIX}/requests",
        headers=HEADERS,
        json={
            "type": "gen4-create",
            "prompt": "@hero on a rooftop",
            "input_data": {"reference_images": ["https://cdn.test/hero.png"]},
        },
    )

    assert response.status_code == 202
    assert response.json() == {"id": "req_2_def", "status": "queued", "credits_required": 8}
    user_id, payload = mock_queue_service.enqueue.await_args.args
    assert user_id == "user-1"
    assert payload.type is GenerationType.GEN4_CREATE


def test_enqueue_requires_user_header(client: TestClient):
    response = client.post(
        f"{PREFIX}/requests", json={"type": "image-edit", "prompt": "make it snow"}
    )
    assert response.status_code == 400


def test_enqueue_validates_prompt_length(client: TestClient):
    response = client.post(
        f"{PREFIX}/requests", headers=HEADERS, json={"type": "image-edit", "prompt": "hi"}
    )
    assert response.status_code == 422


def test_enqueue_reports_missing_credits(
    client: TestClient, mock_queue_service: MagicMock
):
    mock_queue_service.enqueue.side_effect = InsufficientCreditsError(150, 40)

    response = client.post(
        f"{PREFIX}/requests",
        headers=HEADERS,
        json={"type": "video-animate", "prompt": "waves crashing slowly"},
    )

    assert response.status_code == 402
    body = response.json()
    assert body["detail"] == "Insufficient credits. Need 150, have 40"
    assert body["shortfall"] == 110


def test_list_requests(client: TestClient):
    response = client.get(f"{PREFIX}/requests")
    assert response.status_code == 200
    data = response.json()
    assert data["is_processing"] is False
    assert [r["id"] for r in data["requests"]] == ["req_1_abc"]


def test_get_request_found_and_missing(client: TestClient):
    assert client.get(f"{PREFIX}/requests/req_1_abc").json()["status"] == "queued"
    missing = client.get(f"{PREFIX}/requests/req_nope")
    assert missing.status_code == 404


def test_delete_request(client: TestClient, mock_queue: MagicMock):
    assert client.delete(f"{PREFIX}/requests/req_1_abc").status_code == 204
    assert client.delete(f"{PREFIX}/requests/req_nope").status_code == 404
    mock_queue.remove_from_queue.assert_any_call("req_1_abc")


def test_clear_completed_returns_stats(client: TestClient, mock_queue: MagicMock):
    response = client.post(f"{PREFIX}/requests/clear-completed")

    assert response.status_code == 200
    assert response.json()["queued"] == 1
    mock_queue.clear_completed.assert_called_once_with()


def test_clear_all(client: TestClient, mock_queue: MagicMock):
    assert client.delete(f"{PREFIX}/requests").status_code == 204
    mock_queue.clear_all.assert_called_once_with()


def test_stats(client: TestClient):
    response = client.get(f"{PREFIX}/stats")
    assert response.json() == {"queued": 1, "processing": 0, "completed": 0, "failed": 0}


def test_events_require_loaded_settings(client: TestClient):
    client.app.state.plugin_manager = PluginManager()
    response = client.get(f"{PREFIX}/events")
    assert response.status_code == 500


@pytest.mark.asyncio
async def test_snapshot_events_stream_changes_until_disconnect():
    queue = GenerationQueue({})
    request = MagicMock()
    request.is_disconnected = AsyncMock(side_effect=[False, True])
    events = snapshot_events(request, queue, keepalive=1.0)

    first = await events.__anext__()
    assert first.startswith("event: snapshot\ndata: ")
    queue.clear_all()
    second = await events.__anext__()
    assert QueueSnapshot.model_validate_json(second.split("data: ", 1)[1]).requests == []

    with pytest.raises(StopAsyncIteration):
        await events.__anext__()
    assert queue._listeners == []


@pytest.mark.asyncio
async def test_snapshot_events_send_keepalive_when_idle():
    queue = GenerationQueue({})
    request = MagicMock()
    request.is_disconnected = AsyncMock(return_value=False)
    events = snapshot_events(request, queue, keepalive=0.01)

    await events.__anext__()
    assert await events.__anext__() == ": keepalive\n\n"
    await events.aclose()


def test_queue_settings_build_poll_policy():
    settings = QueueSettings(POLL_INTERVAL_SECONDS=1.0, POLL_MAX_ATTEMPTS=5)
    policy = settings.poll_policy()
    assert policy.interval == 1.0
    assert policy.max_attempts == 5
    assert policy.backoff_factor == 1.5
