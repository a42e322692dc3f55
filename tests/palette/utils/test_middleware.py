from types import SimpleNamespace

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from palette.utils.middleware import api_key_middleware, structured_logging_middleware


@pytest.fixture
def client() -> TestClient:
    app = FastAPI()
    settings = SimpleNamespace(api_key="s3cret")

    @app.middleware("http")
    async def check_key(request: Request, call_next):
        return await api_key_middleware(request, call_next, settings)

    app.middleware("http")(structured_logging_middleware)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/protected")
    def protected():
        return {"ok": True}

    return TestClient(app)


def test_missing_or_wrong_key_is_rejected(client: TestClient):
    assert client.get("/protected").status_code == 401
    assert client.get("/protected", headers={"x-api-key": "nope"}).status_code == 401


def test_valid_key_passes_and_gets_correlation_id(client: TestClient):
    response = client.get(
        "/protected", headers={"x-api-key": "s3cret", "x-correlation-id": "corr-1"}
    )

    assert response.status_code == 200
    assert response.headers["X-Correlation-ID"] == "corr-1"


def test_health_is_public(client: TestClient):
    assert client.get("/health").status_code == 200
