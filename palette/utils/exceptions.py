from typing import Any


class ServiceError(Exception):
    """Base exception for all service-layer errors."""

    def __init__(self, detail: str, status_code: int = 500):
        self.detail = detail
        self.status_code = status_code
        super().__init__(self.detail)


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(detail, status_code=404)


class BadRequestError(ServiceError):
    """Raised for invalid client requests (e.g., bad input)."""

    def __init__(self, detail: str = "Bad request"):
        super().__init__(detail, status_code=400)


class ReplicateError(ServiceError):
    """Raised for errors related to Replicate prediction interactions."""

    def __init__(
        self, detail: str = "Replicate API interaction failed", status_code: int = 502
    ):
        super().__init__(detail, status_code=status_code)


class GenerationTimeoutError(ReplicateError):
    """Raised when a prediction is still running after the last allowed poll."""

    def __init__(self, detail: str = "Generation timed out"):
        super().__init__(detail, status_code=504)


class JobCancelledError(ServiceError):
    """Raised inside a running job once its cancellation token fires."""

    def __init__(self, detail: str = "Generation was cancelled"):
        super().__init__(detail, status_code=409)


class InvalidTransitionError(ServiceError):
    """Raised when an update would break the request lifecycle."""

    def __init__(self, detail: str = "Invalid request state transition"):
        super().__init__(detail, status_code=409)


class InsufficientCreditsError(ServiceError):
    """Raised when a user cannot afford the requested generation."""

    def __init__(self, required: int, available: int):
        self.details: dict[str, Any] = {
            "required": required,
            "available": available,
            "shortfall": required - available,
        }
        super().__init__(
            f"Insufficient credits. Need {required}, have {available}",
            status_code=402,
        )
