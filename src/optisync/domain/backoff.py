"""Retry policy and cancellable retry timers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff.

    ``max_attempts`` counts executor calls, including the first one. The wait
    before retry ``n`` (zero-based) is ``base_delay_seconds * 2 ** n`` capped at
    ``max_delay_seconds``.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("Retry delays must be non-negative")

    def next_delay(self, retry_index: int) -> float:
        if retry_index <= 0:
            return min(self.base_delay_seconds, self.max_delay_seconds)
        return min(self.base_delay_seconds * (2**retry_index), self.max_delay_seconds)

    def allows_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts


class RetryHandle:
    """Timer for one scheduled retry.

    ``wait()`` resolves to ``True`` when the delay elapsed and to ``False``
    when the retry was cancelled first.
    """

    def __init__(self, operation_id: str, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self.operation_id = operation_id
        self.delay = delay
        self._wakeup: asyncio.Future[bool] = loop.create_future()
        self._timer = loop.call_later(delay, self._resolve, True)

    def _resolve(self, fired: bool) -> None:  # noqa: FBT001
        if not self._wakeup.done():
            self._wakeup.set_result(fired)

    def cancel(self) -> bool:
        """Cancel the retry; returns ``False`` if it already fired or was cancelled."""

        if self._wakeup.done():
            return False
        self._timer.cancel()
        self._resolve(False)
        return True

    @property
    def pending(self) -> bool:
        return not self._wakeup.done()

    @property
    def cancelled(self) -> bool:
        wakeup = self._wakeup
        return wakeup.done() and not wakeup.cancelled() and wakeup.result() is False

    async def wait(self) -> bool:
        return await self._wakeup
