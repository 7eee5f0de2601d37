"""Rate limiting for progress deliveries within one turn."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import anyio
from anyio.abc import TaskGroup

from .logging import get_logger, log_pipeline

logger = get_logger(__name__)

TEXT_UPDATE_INTERVAL_S = 0.8
ACTION_UPDATE_INTERVAL_S = 1.2


class DeliveryThrottle:
    """Deliver progress at most once per interval, never dropping the last update.

    The interval is shorter while text is streaming. A request that arrives
    too early marks an update pending and arms a single timer for the rest
    of the interval, so a quiet agent still gets its latest state shown.
    """

    def __init__(
        self,
        *,
        deliver: Callable[[], Awaitable[None]],
        task_group: TaskGroup,
        is_streaming: Callable[[], bool] = lambda: False,
        text_interval: float = TEXT_UPDATE_INTERVAL_S,
        action_interval: float = ACTION_UPDATE_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._deliver = deliver
        self._task_group = task_group
        self._is_streaming = is_streaming
        self.text_interval = text_interval
        self.action_interval = action_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = anyio.Lock()
        self._timer: anyio.CancelScope | None = None
        self.last_flush_at = clock()
        self.pending = False
        self.closed = False
        self.delivered = 0

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def interval(self) -> float:
        return self.text_interval if self._is_streaming() else self.action_interval

    async def request_flush(self, *, force: bool = False) -> None:
        if self.closed:
            return
        interval = self.interval()
        since = self._clock() - self.last_flush_at
        if not force and since < interval:
            self.pending = True
            if self._timer is None:
                self._arm(interval - since)
            return
        self._cancel_timer()
        await self._flush()

    def _arm(self, delay: float) -> None:
        scope = anyio.CancelScope()
        self._timer = scope
        log_pipeline(logger, "throttle.timer.armed", delay_s=round(delay, 3))
        self._task_group.start_soon(self._run_timer, scope, delay)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run_timer(self, scope: anyio.CancelScope, delay: float) -> None:
        with scope:
            await self._sleep(delay)
        if scope.cancel_called:
            return
        if self._timer is scope:
            self._timer = None
        if self.pending:
            await self._flush()

    async def _flush(self) -> None:
        async with self._lock:
            if self.closed:
                return
            self.pending = False
            self.last_flush_at = self._clock()
            self.delivered += 1
            await self._deliver()

    async def complete[T](self, final: Callable[[], Awaitable[T]]) -> T:
        """Stop throttling and run ``final`` after any in-flight delivery."""
        self.close()
        async with self._lock:
            return await final()

    def close(self) -> None:
        self._cancel_timer()
        self.closed = True
        self.pending = False
