import asyncio
from unittest.mock import AsyncMock

import pytest

from palette.plugins.post_production.queue.generation_queue import (
    INTERRUPTED_ERROR,
    SHUTDOWN_REASON,
    GenerationQueue,
    describe_error,
)
from palette.plugins.post_production.queue.models import (
    GenerationRequest,
    GenerationResult,
    GenerationType,
    QueueSnapshot,
    RequestStatus,
)
from palette.plugins.post_production.queue.persistence import (
    InMemoryQueueStore,
    dump_requests,
    load_requests,
)
from palette.utils.exceptions import (
    BadRequestError,
    InvalidTransitionError,
    ReplicateError,
    ServiceError,
)

IMAGE_EDIT = GenerationType.IMAGE_EDIT


class RecordingHandler:
    """
    Fake handler: waits ``delay`` on the cancellation token, then succeeds
    unless the prompt is listed in ``fail_on``.
    """

    def __init__(self, delay: float = 0.0, fail_on=()):
        self.delay = delay
        self.fail_on = set(fail_on)
        self.started: list[str] = []
        self.finished: list[str] = []
        self.entered = asyncio.Event()
        self.running = 0
        self.max_running = 0

    async def __call__(self, request, token) -> GenerationResult:
        self.started.append(request.prompt)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.entered.set()
        try:
            await token.sleep(self.delay)
            if request.prompt in self.fail_on:
                raise ReplicateError(f"model rejected {request.prompt}")
            self.finished.append(request.prompt)
            return GenerationResult(
                urls=[f"https://cdn.test/{request.id}.webp"],
                prediction_id=f"pred-{request.id}",
                model="qwen/qwen-image-edit",
                credits=3,
            )
        finally:
            self.running -= 1


def make_queue(handler, **kwargs) -> GenerationQueue:
    return GenerationQueue({IMAGE_EDIT: handler}, **kwargs)


async def drain(queue: GenerationQueue) -> None:
    await asyncio.wait_for(queue.drain(), timeout=2)


@pytest.mark.asyncio
async def test_add_to_queue_returns_id_of_queued_request():
    queue = make_queue(RecordingHandler())

    request_id = queue.add_to_queue(IMAGE_EDIT, "make the sky pink", {"image": "x"})

    assert request_id.startswith("req_")
    request = queue.get_request(request_id)
    assert request.status is RequestStatus.QUEUED
    assert request.input_data == {"image": "x"}
    assert queue.get_queued_count() == 1
    await drain(queue)


@pytest.mark.asyncio
async def test_requests_are_processed_in_insertion_order():
    handler = RecordingHandler()
    queue = make_queue(handler)
    prompts = ["first prompt", "second prompt", "third prompt"]

    ids = [queue.add_to_queue(IMAGE_EDIT, p) for p in prompts]
    await drain(queue)

    assert handler.started == prompts
    assert [queue.get_request(i).status for i in ids] == [RequestStatus.COMPLETED] * 3
    assert not queue.is_processing
    assert queue.currently_processing is None


@pytest.mark.asyncio
async def test_only_one_request_is_processing_at_a_time():
    handler = RecordingHandler(delay=0.01)
    queue = make_queue(handler)
    processing_counts = []
    queue.subscribe(
        lambda snap: processing_counts.append(
            sum(r.status is RequestStatus.PROCESSING for r in snap.requests)
        )
    )

    for i in range(4):
        queue.add_to_queue(IMAGE_EDIT, f"prompt number {i}")
    await drain(queue)

    assert handler.max_running == 1
    assert max(processing_counts) == 1
    assert queue.get_completed_count() == 4


@pytest.mark.asyncio
async def test_failure_is_recorded_and_processing_continues():
    handler = RecordingHandler(fail_on={"second prompt"})
    queue = make_queue(handler)

    first = queue.add_to_queue(IMAGE_EDIT, "first prompt")
    second = queue.add_to_queue(IMAGE_EDIT, "second prompt")
    third = queue.add_to_queue(IMAGE_EDIT, "third prompt")
    await drain(queue)

    failed = queue.get_request(second)
    assert failed.status is RequestStatus.FAILED
    assert failed.error == "model rejected second prompt"
    assert failed.result is None
    assert failed.completed_at is not None
    assert queue.get_request(first).status is RequestStatus.COMPLETED
    assert queue.get_request(third).status is RequestStatus.COMPLETED
    assert queue.stats().model_dump() == {
        "queued": 0,
        "processing": 0,
        "completed": 2,
        "failed": 1,
    }


@pytest.mark.asyncio
async def test_terminal_requests_have_exactly_one_of_result_or_error():
    queue = make_queue(RecordingHandler(fail_on={"bad prompt"}))
    for prompt in ["good prompt", "bad prompt", "fine prompt"]:
        queue.add_to_queue(IMAGE_EDIT, prompt)
    await drain(queue)

    for request in queue.requests:
        if request.status is RequestStatus.COMPLETED:
            assert request.result is not None and request.error is None
            assert request.credits_used == 3
        else:
            assert request.status is RequestStatus.FAILED
            assert request.error and request.result is None


@pytest.mark.asyncio
async def test_completed_request_cannot_be_moved_back():
    queue = make_queue(RecordingHandler())
    request_id = queue.add_to_queue(IMAGE_EDIT, "make it blue")
    await drain(queue)

    with pytest.raises(InvalidTransitionError):
        queue.update_request(request_id, {"status": RequestStatus.QUEUED})
    with pytest.raises(InvalidTransitionError):
        queue.update_request(request_id, {"error": "late failure"})

    assert queue.get_request(request_id).status is RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_update_of_unknown_id_is_ignored():
    queue = make_queue(RecordingHandler())
    queue.add_to_queue(IMAGE_EDIT, "a queued prompt")
    before = queue.snapshot()

    assert queue.update_request("req_missing", {"status": "completed"}) is None
    assert queue.snapshot() == before
    await drain(queue)


@pytest.mark.asyncio
async def test_update_rejects_fields_that_are_not_mutable():
    queue = make_queue(RecordingHandler())
    request_id = queue.add_to_queue(IMAGE_EDIT, "a queued prompt")

    with pytest.raises(BadRequestError):
        queue.update_request(request_id, {"id": "req_other"})
    await drain(queue)


@pytest.mark.asyncio
async def test_clear_completed_keeps_pending_and_is_idempotent():
    queue = make_queue(RecordingHandler(fail_on={"broken prompt"}))
    queue.add_to_queue(IMAGE_EDIT, "finished prompt")
    queue.add_to_queue(IMAGE_EDIT, "broken prompt")
    await drain(queue)

    pending = queue.add_to_queue(IMAGE_EDIT, "still waiting")

    assert queue.clear_completed() == 2
    assert queue.clear_completed() == 0
    assert [r.id for r in queue.requests] == [pending]
    await drain(queue)


@pytest.mark.asyncio
async def test_removing_processing_request_cancels_it_and_drops_its_outcome():
    handler = RecordingHandler(delay=30)
    queue = make_queue(handler)
    running = queue.add_to_queue(IMAGE_EDIT, "slow prompt")
    await asyncio.wait_for(handler.entered.wait(), timeout=1)

    assert queue.remove_from_queue(running) is True
    await drain(queue)

    assert queue.get_request(running) is None
    assert handler.finished == []
    assert queue.requests == ()
    assert not queue.is_processing


@pytest.mark.asyncio
async def test_processing_continues_after_running_request_is_removed():
    handler = RecordingHandler(delay=30)
    queue = make_queue(handler)
    running = queue.add_to_queue(IMAGE_EDIT, "slow prompt")
    waiting = queue.add_to_queue(IMAGE_EDIT, "next prompt")
    await asyncio.wait_for(handler.entered.wait(), timeout=1)

    handler.delay = 0
    queue.remove_from_queue(running)
    await drain(queue)

    assert queue.get_request(waiting).status is RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_remove_unknown_request_returns_false():
    queue = make_queue(RecordingHandler())
    assert queue.remove_from_queue("req_missing") is False


@pytest.mark.asyncio
async def test_clear_all_during_processing_resets_queue():
    handler = RecordingHandler(delay=30)
    queue = make_queue(handler)
    queue.add_to_queue(IMAGE_EDIT, "slow prompt")
    queue.add_to_queue(IMAGE_EDIT, "queued prompt")
    await asyncio.wait_for(handler.entered.wait(), timeout=1)

    queue.clear_all()
    await drain(queue)

    assert queue.snapshot() == QueueSnapshot(
        requests=[], is_processing=False, currently_processing=None
    )
    assert handler.finished == []

    handler.delay = 0
    fresh = queue.add_to_queue(IMAGE_EDIT, "after the reset")
    await drain(queue)
    assert queue.get_request(fresh).status is RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_handler_fails_request():
    queue = make_queue(RecordingHandler())
    request_id = queue.add_to_queue(GenerationType.VIDEO_ANIMATE, "animate this")
    await drain(queue)

    request = queue.get_request(request_id)
    assert request.status is RequestStatus.FAILED
    assert request.error == "Unknown request type: video-animate"


@pytest.mark.asyncio
async def test_subscribers_receive_snapshots_until_unsubscribed():
    queue = make_queue(RecordingHandler())
    snapshots = []
    unsubscribe = queue.subscribe(snapshots.append)

    queue.add_to_queue(IMAGE_EDIT, "watch this one")
    await drain(queue)
    seen = len(snapshots)
    unsubscribe()
    queue.clear_completed()

    assert seen > 0
    assert len(snapshots) == seen
    assert snapshots[-1].requests[0].status is RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_the_queue():
    queue = make_queue(RecordingHandler())
    queue.subscribe(lambda snap: 1 / 0)

    request_id = queue.add_to_queue(IMAGE_EDIT, "still processed")
    await drain(queue)

    assert queue.get_request(request_id).status is RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_completion_hook_receives_completed_request():
    hook = AsyncMock()
    queue = make_queue(RecordingHandler(), on_completed=hook)

    request_id = queue.add_to_queue(IMAGE_EDIT, "charge me", user_id="user-1")
    await drain(queue)

    hook.assert_awaited_once()
    charged = hook.await_args.args[0]
    assert charged.id == request_id
    assert charged.status is RequestStatus.COMPLETED
    assert charged.credits_used == 3
    assert charged.user_id == "user-1"


@pytest.mark.asyncio
async def test_completion_hook_failure_keeps_request_completed():
    hook = AsyncMock(side_effect=ServiceError("Credit deduction failed"))
    queue = make_queue(RecordingHandler(), on_completed=hook)

    request_id = queue.add_to_queue(IMAGE_EDIT, "charge me")
    await drain(queue)

    assert queue.get_request(request_id).status is RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_completion_hook_is_not_called_for_failures():
    hook = AsyncMock()
    queue = make_queue(RecordingHandler(fail_on={"broken prompt"}), on_completed=hook)

    queue.add_to_queue(IMAGE_EDIT, "broken prompt")
    await drain(queue)

    hook.assert_not_awaited()


@pytest.mark.asyncio
async def test_changes_are_persisted_to_the_store():
    store = InMemoryQueueStore()
    queue = make_queue(RecordingHandler(), store=store)

    request_id = queue.add_to_queue(IMAGE_EDIT, "persist me")
    await drain(queue)

    persisted = load_requests(store.payload)
    assert [r.id for r in persisted] == [request_id]
    assert persisted[0].status is RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_restore_fails_interrupted_requests_and_resumes_queued_ones():
    interrupted = GenerationRequest(
        id="req_1_interrupted",
        type=IMAGE_EDIT,
        status=RequestStatus.PROCESSING,
        prompt="was running",
    )
    waiting = GenerationRequest(id="req_2_waiting", type=IMAGE_EDIT, prompt="was queued")
    store = InMemoryQueueStore(dump_requests([interrupted, waiting]))
    handler = RecordingHandler()
    queue = make_queue(handler, store=store)

    assert await queue.restore() == 2
    await drain(queue)

    restored = queue.get_request(interrupted.id)
    assert restored.status is RequestStatus.FAILED
    assert restored.error == INTERRUPTED_ERROR
    assert queue.get_request(waiting.id).status is RequestStatus.COMPLETED
    assert handler.started == ["was queued"]


@pytest.mark.asyncio
async def test_restore_without_store_is_a_no_op():
    queue = make_queue(RecordingHandler())
    assert await queue.restore() == 0


@pytest.mark.asyncio
async def test_shutdown_fails_running_request_and_keeps_queued_ones():
    handler = RecordingHandler(delay=30)
    queue = make_queue(handler)
    running = queue.add_to_queue(IMAGE_EDIT, "slow prompt")
    waiting = queue.add_to_queue(IMAGE_EDIT, "queued prompt")
    await asyncio.wait_for(handler.entered.wait(), timeout=1)

    await queue.shutdown(timeout=2)

    stopped = queue.get_request(running)
    assert stopped.status is RequestStatus.FAILED
    assert stopped.error == SHUTDOWN_REASON
    assert queue.get_request(waiting).status is RequestStatus.QUEUED
    with pytest.raises(ServiceError) as exc_info:
        queue.add_to_queue(IMAGE_EDIT, "too late now")
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_mixed_types_are_processed_in_order_by_their_handlers():
    order = []

    def returning(url: str):
        async def handler(request, token):
            order.append(request.prompt)
            return {"url": url}

        return handler

    queue = GenerationQueue(
        {
            GenerationType.IMAGE_EDIT: returning("https://cdn.test/edit.webp"),
            GenerationType.GEN4_CREATE: returning("https://cdn.test/gen4.png"),
            GenerationType.VIDEO_ANIMATE: returning("https://cdn.test/clip.mp4"),
        }
    )

    a = queue.add_to_queue(GenerationType.IMAGE_EDIT, "prompt A", {"image": "a.png"})
    b = queue.add_to_queue(GenerationType.GEN4_CREATE, "prompt B")
    c = queue.add_to_queue(GenerationType.VIDEO_ANIMATE, "prompt C")
    await drain(queue)

    assert order == ["prompt A", "prompt B", "prompt C"]
    assert queue.get_completed_count() == 3
    assert queue.get_request(a).result.urls == ["https://cdn.test/edit.webp"]
    assert queue.get_request(b).result.urls == ["https://cdn.test/gen4.png"]
    assert queue.get_request(c).result.urls == ["https://cdn.test/clip.mp4"]


@pytest.mark.asyncio
async def test_removing_queued_request_before_processing_skips_it():
    handler = RecordingHandler()
    queue = make_queue(handler)
    a = queue.add_to_queue(IMAGE_EDIT, "prompt A")
    b = queue.add_to_queue(IMAGE_EDIT, "prompt B")

    assert queue.remove_from_queue(a) is True
    await drain(queue)

    assert handler.started == ["prompt B"]
    assert [r.id for r in queue.requests] == [b]
    assert queue.get_request(b).status is RequestStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("returned", "error"),
    [
        (None, "Handler returned no result (NoneType)"),
        ({"urls": []}, "Handler returned an invalid result"),
        ("https://cdn.test/plain.png", "Handler returned no result (str)"),
    ],
)
async def test_malformed_handler_result_fails_request_and_queue_moves_on(
    returned, error
):
    async def handler(request, token):
        if request.prompt == "bad prompt":
            return returned
        return {"url": f"https://cdn.test/{request.id}.webp"}

    queue = make_queue(handler)
    bad = queue.add_to_queue(IMAGE_EDIT, "bad prompt")
    good = queue.add_to_queue(IMAGE_EDIT, "good prompt")
    await drain(queue)

    failed = queue.get_request(bad)
    assert failed.status is RequestStatus.FAILED
    assert failed.error.startswith(error)
    assert queue.get_request(good).status is RequestStatus.COMPLETED
    assert queue.get_processing_count() == 0
    assert not queue.is_processing

    later = queue.add_to_queue(IMAGE_EDIT, "after the failure")
    await drain(queue)
    assert queue.get_request(later).status is RequestStatus.COMPLETED
    assert queue.get_processing_count() == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "updates",
    [{"status": "bogus"}, {"error": 123}, {"result": {"urls": "not-a-list"}}],
)
async def test_update_with_invalid_values_is_a_bad_request(updates):
    queue = make_queue(RecordingHandler())
    request_id = queue.add_to_queue(IMAGE_EDIT, "a queued prompt")

    with pytest.raises(BadRequestError, match="Invalid update"):
        queue.update_request(request_id, updates)

    assert queue.get_request(request_id).status is RequestStatus.QUEUED
    await drain(queue)


@pytest.mark.asyncio
async def test_reserved_credits_cover_only_unfinished_requests():
    handler = RecordingHandler(delay=30)
    queue = make_queue(handler)
    queue.add_to_queue(IMAGE_EDIT, "running prompt", user_id="u1", credits_required=3)
    queue.add_to_queue(IMAGE_EDIT, "waiting prompt", user_id="u1", credits_required=3)
    queue.add_to_queue(IMAGE_EDIT, "someone else", user_id="u2", credits_required=8)
    await asyncio.wait_for(handler.entered.wait(), timeout=1)

    assert queue.get_reserved_credits("u1") == 6
    assert queue.get_reserved_credits("u2") == 8

    handler.delay = 0
    queue.clear_all()
    await drain(queue)
    assert queue.get_reserved_credits("u1") == 0


def test_describe_error_prefers_service_detail():
    assert describe_error(ReplicateError("NSFW content detected")) == "NSFW content detected"
    assert describe_error(ValueError("bad value")) == "bad value"
    assert describe_error(RuntimeError()) == "RuntimeError"
