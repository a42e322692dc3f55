from unittest.mock import AsyncMock, MagicMock

import pytest

from palette.utils.replicate_models import ReplicatePrediction


@pytest.fixture
def mock_config_service() -> MagicMock:
    """Provides a ConfigService mock that always answers with the default value."""
    mock = MagicMock()
    mock.get_or_create = AsyncMock(side_effect=lambda key, default, *args: default)
    return mock


@pytest.fixture
def mock_replicate_client() -> MagicMock:
    """Provides a ReplicateClient mock whose predictions succeed with one image."""
    mock = MagicMock()
    prediction = ReplicatePrediction(
        id="pred_123",
        status="succeeded",
        output=["https://replicate.delivery/out-0.webp"],
    )
    mock.run = AsyncMock(return_value=(prediction, prediction.output_urls))
    return mock
