"""
Single-worker generation queue.

Requests are processed one at a time in insertion order. All state lives on
the event loop: every mutating method below is synchronous, so picking the
next request, marking it ``processing`` and writing its outcome back each
happen without interleaving with ``add_to_queue``/``remove_from_queue``.
"""

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, List, Mapping

import structlog
import structlog.contextvars
from pydantic import ValidationError

from palette.utils.cancellation import CancellationToken
from palette.utils.exceptions import (
    BadRequestError,
    InvalidTransitionError,
    JobCancelledError,
    ServiceError,
)
from palette_core.tracing import get_tracer

from .handlers import Handler
from .models import (
    GenerationRequest,
    GenerationResult,
    GenerationType,
    QueueSnapshot,
    QueueStats,
    RequestStatus,
    utcnow,
)
from .persistence import QueueStore

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

QueueListener = Callable[[QueueSnapshot], None]
CompletionHook = Callable[[GenerationRequest], Awaitable[None]]

UPDATABLE_FIELDS = frozenset(
    {"status", "prompt", "input_data", "result", "error", "completed_at", "credits_used"}
)

ALLOWED_TRANSITIONS = {
    RequestStatus.QUEUED: {RequestStatus.QUEUED, RequestStatus.PROCESSING},
    RequestStatus.PROCESSING: {
        RequestStatus.PROCESSING,
        RequestStatus.COMPLETED,
        RequestStatus.FAILED,
    },
    RequestStatus.COMPLETED: {RequestStatus.COMPLETED},
    RequestStatus.FAILED: {RequestStatus.FAILED},
}

INTERRUPTED_ERROR = "Interrupted before completion"
SHUTDOWN_REASON = "Queue is shutting down"


def new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, ServiceError):
        return exc.detail
    return str(exc) or type(exc).__name__


def coerce_result(value: Any) -> GenerationResult:
    """Accepts a ``GenerationResult`` or a mapping with ``urls`` or ``url``."""
    if isinstance(value, GenerationResult):
        return value
    if isinstance(value, Mapping):
        try:
            return GenerationResult.model_validate(dict(value))
        except ValidationError as e:
            raise ServiceError(
                f"Handler returned an invalid result: {e.errors()[0]['msg']}"
            ) from e
    raise ServiceError(f"Handler returned no result ({type(value).__name__})")


class GenerationQueue:
    """
    Owns the lifecycle of generation requests:
    ``queued -> processing -> completed | failed``.

    Args:
        handlers: which callable processes each ``GenerationType``.
        store: optional persistence adapter, saved to on every change.
        on_completed: awaited after a request is written back as completed.
    """

    def __init__(
        self,
        handlers: Mapping[GenerationType, Handler],
        store: QueueStore | None = None,
        on_completed: CompletionHook | None = None,
    ):
        self._handlers = dict(handlers)
        self._store = store
        self._on_completed = on_completed

        self._requests: List[GenerationRequest] = []
        self._is_processing = False
        self._currently_processing: str | None = None
        self._tokens: dict[str, CancellationToken] = {}
        self._listeners: List[QueueListener] = []

        # Bumped by clear_all so a loop started before the reset stops quietly.
        self._epoch = 0
        self._closing = False
        self._worker: asyncio.Task | None = None
        self._workers: set[asyncio.Task] = set()
        self._pending_saves: set[asyncio.Task] = set()
        self._save_lock = asyncio.Lock()

    @property
    def requests(self) -> tuple[GenerationRequest, ...]:
        return tuple(self._requests)

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def currently_processing(self) -> str | None:
        return self._currently_processing

    def add_to_queue(
        self,
        type: GenerationType | str,
        prompt: str,
        input_data: Mapping[str, Any] | None = None,
        user_id: str | None = None,
        credits_required: int | None = None,
    ) -> str:
        """
        Appends a ``queued`` request and returns its id. Starts the processing
        loop on the running event loop if it is idle.

        ``credits_required`` is the enqueue-time estimate; it stays reserved
        against the user's balance until the request is finished.
        """
        loop = asyncio.get_running_loop()
        if self._closing:
            raise ServiceError(SHUTDOWN_REASON, status_code=503)

        request = GenerationRequest(
            id=new_request_id(),
            type=GenerationType(type),
            prompt=prompt,
            input_data=dict(input_data or {}),
            user_id=user_id,
            credits_required=credits_required,
        )
        self._requests.append(request)
        logger.info(
            "Request queued",
            request_id=request.id,
            generation_type=request.type.value,
            queued=self.get_queued_count(),
        )
        self._changed()

        if not self._is_processing and (self._worker is None or self._worker.done()):
            self._start_worker(loop)
        return request.id

    def update_request(
        self, request_id: str, updates: Mapping[str, Any]
    ) -> GenerationRequest | None:
        """
        Merges ``updates`` into the request. Unknown ids are ignored and return
        ``None``; updates that would break the lifecycle raise
        ``InvalidTransitionError``.
        """
        index = self._index_of(request_id)
        if index is None:
            return None

        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise BadRequestError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        current = self._requests[index]
        try:
            updated = GenerationRequest.model_validate({**current.model_dump(), **updates})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise BadRequestError(f"Invalid update for {request_id}: {problems}") from e
        self._check_transition(current, updated)

        self._requests[index] = updated
        self._changed()
        return updated

    def remove_from_queue(self, request_id: str) -> bool:
        """
        Deletes the request whatever its status. A running job is cancelled
        and its outcome is discarded.
        """
        index = self._index_of(request_id)
        if index is None:
            return False

        removed = self._requests.pop(index)
        token = self._tokens.get(request_id)
        if token is not None:
            token.cancel("Request was removed from the queue")
        if self._currently_processing == request_id:
            self._currently_processing = None
        logger.info(
            "Request removed", request_id=request_id, status=removed.status.value
        )
        self._changed()
        return True

    def clear_completed(self) -> int:
        """Removes completed and failed requests; returns how many were removed."""
        kept = [r for r in self._requests if not r.status.is_terminal]
        removed = len(self._requests) - len(kept)
        if removed:
            self._requests = kept
            logger.info("Cleared finished requests", removed=removed)
            self._changed()
        return removed

    def clear_all(self) -> None:
        """Drops every request and resets the processing state."""
        for token in self._tokens.values():
            token.cancel("Queue was cleared")
        self._requests = []
        self._epoch += 1
        self._is_processing = False
        self._currently_processing = None
        self._worker = None
        logger.info("Generation queue cleared")
        self._changed()

    async def process_queue(self) -> None:
        """Processes queued requests oldest first until none are left."""
        if self._is_processing:
            return
        self._is_processing = True
        epoch = self._epoch
        structlog.contextvars.clear_contextvars()
        self._changed()

        try:
            while epoch == self._epoch and not self._closing:
                request = self._next_queued()
                if request is None:
                    break
                await self._process(request, epoch)
        finally:
            if epoch == self._epoch:
                self._is_processing = False
                self._currently_processing = None
                self._changed()

    async def _process(self, request: GenerationRequest, epoch: int) -> None:
        token = CancellationToken()
        self._tokens[request.id] = token
        self._currently_processing = request.id
        self.update_request(request.id, {"status": RequestStatus.PROCESSING})

        with structlog.contextvars.bound_contextvars(
            request_id=request.id, generation_type=request.type.value
        ), tracer.start_as_current_span(
            "generation_queue.process",
            attributes={
                "palette.request_id": request.id,
                "palette.generation_type": request.type.value,
            },
        ) as span:
            started = time.monotonic()
            logger.info("Processing request")
            try:
                handler = self._handlers.get(request.type)
                if handler is None:
                    raise BadRequestError(f"Unknown request type: {request.type.value}")
                result = coerce_result(await handler(request, token))
                completed = self._write_back(
                    request.id,
                    {
                        "status": RequestStatus.COMPLETED,
                        "result": result,
                        "completed_at": utcnow(),
                        "credits_used": result.credits,
                    },
                )
            except JobCancelledError as e:
                logger.info("Request cancelled", reason=e.detail)
                self._write_back(
                    request.id,
                    {
                        "status": RequestStatus.FAILED,
                        "error": e.detail,
                        "completed_at": utcnow(),
                    },
                )
            except Exception as e:
                error = describe_error(e)
                span.record_exception(e)
                logger.warning(
                    "Request failed",
                    error=error,
                    duration_s=round(time.monotonic() - started, 2),
                )
                self._write_back(
                    request.id,
                    {
                        "status": RequestStatus.FAILED,
                        "error": error,
                        "completed_at": utcnow(),
                    },
                )
            else:
                if completed is not None:
                    logger.info(
                        "Request completed",
                        outputs=len(result.urls),
                        duration_s=round(time.monotonic() - started, 2),
                    )
                    await self._run_completion_hook(completed)
            finally:
                self._tokens.pop(request.id, None)

    def _write_back(
        self, request_id: str, updates: Mapping[str, Any]
    ) -> GenerationRequest | None:
        current = self.get_request(request_id)
        if current is None or current.status.is_terminal:
            logger.info("Dropping outcome of a request that is no longer processing")
            return None
        return self.update_request(request_id, updates)

    async def _run_completion_hook(self, request: GenerationRequest) -> None:
        if self._on_completed is None:
            return
        try:
            await self._on_completed(request)
        except Exception:
            logger.exception("Completion hook failed", request_id=request.id)

    def get_request(self, request_id: str) -> GenerationRequest | None:
        index = self._index_of(request_id)
        return self._requests[index] if index is not None else None

    def get_queued_count(self) -> int:
        return self._count(RequestStatus.QUEUED)

    def get_processing_count(self) -> int:
        return self._count(RequestStatus.PROCESSING)

    def get_completed_count(self) -> int:
        return self._count(RequestStatus.COMPLETED)

    def get_failed_count(self) -> int:
        return self._count(RequestStatus.FAILED)

    def get_reserved_credits(self, user_id: str) -> int:
        """Credits estimated for the user's queued and processing requests."""
        return sum(
            r.credits_required or 0
            for r in self._requests
            if r.user_id == user_id and not r.status.is_terminal
        )

    def stats(self) -> QueueStats:
        return QueueStats(
            queued=self.get_queued_count(),
            processing=self.get_processing_count(),
            completed=self.get_completed_count(),
            failed=self.get_failed_count(),
        )

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(
            requests=list(self._requests),
            is_processing=self._is_processing,
            currently_processing=self._currently_processing,
        )

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        """
        Calls ``listener`` with a fresh snapshot after every change. Returns a
        function that unsubscribes it.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def restore(self) -> int:
        """
        Loads persisted requests in front of the current ones. Requests saved
        mid-processing cannot be resumed and are marked failed.
        """
        if self._store is None:
            return 0
        restored = []
        for request in await self._store.load():
            if request.status is RequestStatus.PROCESSING:
                logger.warning(
                    "Marking interrupted request as failed", request_id=request.id
                )
                request = request.model_copy(
                    update={
                        "status": RequestStatus.FAILED,
                        "error": INTERRUPTED_ERROR,
                        "completed_at": utcnow(),
                    }
                )
            restored.append(request)

        known = {r.id for r in restored}
        self._requests = restored + [r for r in self._requests if r.id not in known]
        logger.info("Generation queue restored", count=len(restored))
        self._changed()

        if self.get_queued_count() and not self._is_processing:
            self._start_worker(asyncio.get_running_loop())
        return len(restored)

    async def drain(self) -> None:
        """Waits until no loop is running and every pending save has finished."""
        while True:
            running = {w for w in self._workers if not w.done()}
            if running:
                await asyncio.wait(running)
                continue
            saving = {t for t in self._pending_saves if not t.done()}
            if saving:
                await asyncio.wait(saving)
                continue
            return

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stops taking work, cancels the running job and waits for the loop."""
        self._closing = True
        for token in list(self._tokens.values()):
            token.cancel(SHUTDOWN_REASON)
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Generation queue did not stop in time", timeout=timeout)
            for worker in self._workers:
                worker.cancel()

    def _start_worker(self, loop: asyncio.AbstractEventLoop) -> None:
        worker = loop.create_task(self.process_queue(), name="generation-queue")
        self._worker = worker
        self._workers.add(worker)
        worker.add_done_callback(self._workers.discard)

    def _next_queued(self) -> GenerationRequest | None:
        return next(
            (r for r in self._requests if r.status is RequestStatus.QUEUED), None
        )

    def _index_of(self, request_id: str) -> int | None:
        for index, request in enumerate(self._requests):
            if request.id == request_id:
                return index
        return None

    def _count(self, status: RequestStatus) -> int:
        return sum(1 for r in self._requests if r.status is status)

    @staticmethod
    def _check_transition(
        current: GenerationRequest, updated: GenerationRequest
    ) -> None:
        if updated.status not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransitionError(
                f"Request {current.id} cannot move from "
                f"{current.status.value} to {updated.status.value}"
            )
        if current.status.is_terminal and (
            updated.result != current.result or updated.error != current.error
        ):
            raise InvalidTransitionError(
                f"Request {current.id} is already {current.status.value}"
            )
        if (updated.result is not None) != (updated.status is RequestStatus.COMPLETED):
            raise InvalidTransitionError("A result is only allowed on completed requests")
        if (updated.error is not None) != (updated.status is RequestStatus.FAILED):
            raise InvalidTransitionError("An error is only allowed on failed requests")

    def _changed(self) -> None:
        if self._listeners:
            snapshot = self.snapshot()
            for listener in list(self._listeners):
                try:
                    listener(snapshot)
                except Exception:
                    logger.exception("Queue listener failed")
        if self._store is not None:
            self._schedule_save()

    def _schedule_save(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, queue change not persisted")
            return
        task = loop.create_task(self._save(list(self._requests)))
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    async def _save(self, requests: List[GenerationRequest]) -> None:
        async with self._save_lock:
            try:
                await self._store.save(requests)
            except Exception:
                logger.exception("Failed to persist generation queue")
