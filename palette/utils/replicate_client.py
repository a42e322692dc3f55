from typing import Any, List

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from palette.utils.cancellation import CancellationToken
from palette.utils.exceptions import (
    GenerationTimeoutError,
    JobCancelledError,
    ReplicateError,
    ServiceError,
)
from palette.utils.replicate_models import PollPolicy, ReplicatePrediction

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.replicate.com/v1"


class ReplicateClient:
    """
    A centralized client for the Replicate predictions API.

    ``run`` turns a remote prediction into a single awaitable: it submits the
    job, polls it according to the ``PollPolicy`` and returns the output URLs.
    """

    def __init__(
        self,
        api_token: str,
        poll_policy: PollPolicy | None = None,
        base_url: str = DEFAULT_BASE_URL,
        prefer_wait_seconds: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not api_token:
            raise ValueError("Replicate API token is required.")
        self._headers = {
            "Authorization": f"Bearer {api_token}",
        }
        self._base_url = base_url.rstrip("/")
        self._prefer_wait_seconds = prefer_wait_seconds
        self.poll_policy = poll_policy or PollPolicy()
        self._client = http_client or httpx.AsyncClient(timeout=180.0)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(
                method, f"{self._base_url}{path}", headers=headers, **kwargs
            )
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            logger.error(
                "HTTP error from Replicate API",
                path=path,
                status_code=e.response.status_code,
                response=e.response.text[:500],
            )
            raise ReplicateError(
                f"Replicate API returned an error: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            logger.error("Could not reach Replicate API", path=path, error=str(e))
            raise ReplicateError(f"Could not reach Replicate API: {e}") from e

    @staticmethod
    def _parse_prediction(response: httpx.Response) -> ReplicatePrediction:
        data = response.json()
        try:
            return ReplicatePrediction.model_validate(data)
        except ValidationError as e:
            logger.error(
                "Failed to validate prediction returned by Replicate",
                error=str(e),
                data=data,
            )
            raise ReplicateError(
                "Replicate returned an invalid prediction structure."
            ) from e

    async def create_prediction(
        self, model: str, payload: BaseModel | dict[str, Any]
    ) -> ReplicatePrediction:
        """
        Submits a prediction. ``owner/name`` targets the model's latest
        official version, ``owner/name:version`` pins a version.
        """
        model_input = (
            payload.model_dump(mode="json", exclude_none=True)
            if isinstance(payload, BaseModel)
            else {k: v for k, v in payload.items() if v is not None}
        )
        headers = {"Content-Type": "application/json"}
        if self._prefer_wait_seconds:
            headers["Prefer"] = f"wait={self._prefer_wait_seconds}"

        if ":" in model:
            version = model.split(":", 1)[1]
            path = "/predictions"
            body = {"version": version, "input": model_input}
        else:
            path = f"/models/{model}/predictions"
            body = {"input": model_input}

        logger.info("Submitting prediction to Replicate", model=model)
        response = await self._request("POST", path, json=body, headers=headers)
        prediction = self._parse_prediction(response)
        logger.debug(
            "Prediction created",
            prediction_id=prediction.id,
            status=prediction.status,
        )
        return prediction

    async def get_prediction(self, prediction_id: str) -> ReplicatePrediction:
        response = await self._request("GET", f"/predictions/{prediction_id}")
        return self._parse_prediction(response)

    async def cancel_prediction(self, prediction_id: str) -> None:
        await self._request("POST", f"/predictions/{prediction_id}/cancel")
        logger.info("Cancelled Replicate prediction", prediction_id=prediction_id)

    async def wait_for_completion(
        self,
        prediction: ReplicatePrediction,
        token: CancellationToken | None = None,
    ) -> ReplicatePrediction:
        """
        Polls until the prediction reaches a terminal status.

        Raises ``GenerationTimeoutError`` when it is still running after
        ``poll_policy.max_attempts`` polls, and ``JobCancelledError`` once the
        token is cancelled. Both first ask Replicate to cancel the job.
        """
        token = token or CancellationToken()
        policy = self.poll_policy
        log = logger.bind(prediction_id=prediction.id)

        try:
            for attempt in range(1, policy.max_attempts + 1):
                if prediction.is_terminal:
                    return prediction
                await token.sleep(policy.delay_for(attempt))
                prediction = await self.get_prediction(prediction.id)
                log.debug(
                    "Polling Replicate prediction",
                    status=prediction.status,
                    attempt=attempt,
                )
        except JobCancelledError:
            await self._cancel_quietly(prediction.id)
            raise

        if prediction.is_terminal:
            return prediction
        log.error("Prediction timed out", attempts=policy.max_attempts)
        await self._cancel_quietly(prediction.id)
        raise GenerationTimeoutError(
            f"Prediction {prediction.id} did not finish after {policy.max_attempts} polls"
        )

    async def _cancel_quietly(self, prediction_id: str) -> None:
        try:
            await self.cancel_prediction(prediction_id)
        except ReplicateError as e:
            logger.warning(
                "Failed to cancel prediction on Replicate",
                prediction_id=prediction_id,
                error=e.detail,
            )

    async def run(
        self,
        model: str,
        payload: BaseModel | dict[str, Any],
        token: CancellationToken | None = None,
    ) -> tuple[ReplicatePrediction, List[str]]:
        """
        Submits a prediction, waits for it and returns it with its output URLs.
        """
        log = logger.bind(model=model)
        try:
            if token is not None:
                token.raise_if_cancelled()
            prediction = await self.create_prediction(model, payload)
            prediction = await self.wait_for_completion(prediction, token)
        except ServiceError:
            raise
        except Exception as e:
            log.exception("An unexpected error occurred in ReplicateClient")
            raise ServiceError(
                "An unexpected error occurred while contacting Replicate."
            ) from e

        if prediction.status == "failed":
            log.error(
                "Replicate prediction failed",
                prediction_id=prediction.id,
                error=prediction.error,
            )
            raise ReplicateError(prediction.error or "Generation failed")
        if prediction.status == "canceled":
            raise ReplicateError("Generation was canceled")

        urls = prediction.output_urls
        if not urls:
            raise ReplicateError("No output received from Replicate")
        log.info(
            "Prediction succeeded",
            prediction_id=prediction.id,
            outputs=len(urls),
        )
        return prediction, urls
