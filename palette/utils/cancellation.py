import asyncio

from palette.utils.exceptions import JobCancelledError


class CancellationToken:
    """
    One-shot cancellation flag shared between the queue and a running job.

    ``sleep`` doubles as the poll delay: it returns early, raising
    ``JobCancelledError``, as soon as ``cancel`` is called.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason = "Generation was cancelled"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        if reason:
            self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError(self._reason)

    async def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
