"""Edit emulation for transports that can only post and recall messages.

An "edit" posts the new content as a fresh message and then recalls the
message it replaces. Requests for one thread are debounced and coalesced:
only the latest content is sent, and every caller that asked for an edit in
the meantime resolves to that single delivery. A request never waits longer
than ``max_wait_s`` once the first of its round was queued.
"""

from __future__ import annotations

import enum
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import anyio
from anyio.abc import TaskGroup

from .logging import get_logger, log_pipeline
from .serializer import ThreadSerializer
from .transport import (
    DeliveredMessage,
    MessageId,
    RecallOutcome,
    ThreadId,
    Transport,
)

logger = get_logger(__name__)

DEBOUNCE_S = 0.3
MAX_WAIT_S = 2.0


class EditPhase(enum.Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    EXECUTING = "executing"


@dataclass(slots=True)
class EditWaiter:
    done: anyio.Event = field(default_factory=anyio.Event)
    result: DeliveredMessage | None = None
    error: Exception | None = None

    def resolve(self, result: DeliveredMessage) -> None:
        if self.done.is_set():
            return
        self.result = result
        self.done.set()

    def fail(self, error: Exception) -> None:
        if self.done.is_set():
            return
        self.error = error
        self.done.set()

    async def wait(self) -> DeliveredMessage:
        await self.done.wait()
        if self.error is not None:
            raise self.error
        assert self.result is not None
        return self.result


@dataclass(slots=True)
class ThreadEditState:
    recall_handle: str | None = None
    message_id: MessageId | None = None
    pending_content: str | None = None
    waiters: list[EditWaiter] = field(default_factory=list)
    first_pending_at: float | None = None
    debounce: anyio.CancelScope | None = None
    executing: bool = False
    idle: anyio.Event = field(default_factory=anyio.Event)
    preempting: int = 0
    last_recall: RecallOutcome | None = None

    @property
    def phase(self) -> EditPhase:
        if self.executing:
            return EditPhase.EXECUTING
        if self.debounce is not None:
            return EditPhase.DEBOUNCING
        return EditPhase.IDLE

    def take_pending(self) -> tuple[str | None, list[EditWaiter]]:
        content, waiters = self.pending_content, self.waiters
        self.pending_content = None
        self.waiters = []
        self.first_pending_at = None
        return content, waiters


class EditEmulator:
    def __init__(
        self,
        transport: Transport,
        *,
        task_group: TaskGroup,
        debounce_s: float = DEBOUNCE_S,
        max_wait_s: float = MAX_WAIT_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        serializer: ThreadSerializer | None = None,
    ) -> None:
        self._transport = transport
        self._task_group = task_group
        self.debounce_s = debounce_s
        self.max_wait_s = max_wait_s
        self._clock = clock
        self._sleep = sleep
        # Must not be the serializer that guards whole turns: a turn waits on
        # its own edits while holding that one.
        self._serializer = serializer or ThreadSerializer()
        self._states: dict[ThreadId, ThreadEditState] = {}

    def _state(self, thread_id: ThreadId) -> ThreadEditState:
        state = self._states.get(thread_id)
        if state is None:
            state = ThreadEditState()
            self._states[thread_id] = state
        return state

    def state(self, thread_id: ThreadId) -> ThreadEditState | None:
        return self._states.get(thread_id)

    def track_message(
        self,
        thread_id: ThreadId,
        recall_handle: str | None,
        *,
        message_id: MessageId | None = None,
    ) -> None:
        state = self._state(thread_id)
        state.recall_handle = recall_handle
        state.message_id = message_id

    def has_tracked_message(self, thread_id: ThreadId) -> bool:
        state = self._states.get(thread_id)
        if state is None:
            return False
        return state.recall_handle is not None or state.message_id is not None

    def phase(self, thread_id: ThreadId) -> EditPhase:
        state = self._states.get(thread_id)
        return EditPhase.IDLE if state is None else state.phase

    async def queue_edit(self, thread_id: ThreadId, content: str) -> DeliveredMessage:
        return await self.submit_edit(thread_id, content).wait()

    def submit_edit(self, thread_id: ThreadId, content: str) -> EditWaiter:
        """Queue ``content`` without waiting; the returned waiter resolves on delivery."""
        state = self._state(thread_id)
        waiter = EditWaiter()
        now = self._clock()
        state.pending_content = content
        state.waiters.append(waiter)
        if state.first_pending_at is None:
            state.first_pending_at = now

        if state.executing:
            log_pipeline(logger, "edit.queued.behind_execution", thread_id=thread_id)
        elif now - state.first_pending_at >= self.max_wait_s:
            log_pipeline(
                logger,
                "edit.max_wait.flush",
                thread_id=thread_id,
                waited_s=round(now - state.first_pending_at, 3),
            )
            self._cancel_debounce(state)
            self._begin_execution(state)
            self._task_group.start_soon(self._flush, thread_id, state)
        else:
            self._arm_debounce(thread_id, state)
        return waiter

    async def flush_now(self, thread_id: ThreadId, content: str) -> DeliveredMessage:
        """Deliver ``content`` right away as the thread's final edit.

        Content still pending from ``queue_edit`` is superseded and its
        callers resolve to this delivery.
        """
        state = self._state(thread_id)
        self._cancel_debounce(state)
        waiter = EditWaiter()
        _, waiters = state.take_pending()
        waiters.append(waiter)

        state.preempting += 1
        try:
            while state.executing:
                await state.idle.wait()
                _, superseded = state.take_pending()
                waiters.extend(superseded)
        finally:
            state.preempting -= 1

        self._begin_execution(state)
        try:
            result = await self._execute(thread_id, state, content)
        except Exception as exc:
            for item in waiters:
                item.fail(exc)
            raise
        else:
            for item in waiters:
                item.resolve(result)
        finally:
            self._end_execution(thread_id, state)
        return await waiter.wait()

    def cleanup(self, thread_id: ThreadId) -> None:
        state = self._states.pop(thread_id, None)
        if state is None:
            return
        self._cancel_debounce(state)
        _, waiters = state.take_pending()
        if waiters:
            logger.debug(
                "edit.cleanup.pending", thread_id=thread_id, waiters=len(waiters)
            )
        for waiter in waiters:
            waiter.fail(RuntimeError("edit abandoned before delivery"))

    def _arm_debounce(self, thread_id: ThreadId, state: ThreadEditState) -> None:
        self._cancel_debounce(state)
        scope = anyio.CancelScope()
        state.debounce = scope
        self._task_group.start_soon(self._run_debounce, thread_id, state, scope)

    def _cancel_debounce(self, state: ThreadEditState) -> None:
        if state.debounce is not None:
            state.debounce.cancel()
            state.debounce = None

    async def _run_debounce(
        self,
        thread_id: ThreadId,
        state: ThreadEditState,
        scope: anyio.CancelScope,
    ) -> None:
        with scope:
            await self._sleep(self.debounce_s)
        if scope.cancel_called or state.debounce is not scope:
            return
        state.debounce = None
        if state.executing or state.pending_content is None:
            return
        self._begin_execution(state)
        await self._flush(thread_id, state)

    def _begin_execution(self, state: ThreadEditState) -> None:
        state.executing = True
        state.idle = anyio.Event()

    def _end_execution(self, thread_id: ThreadId, state: ThreadEditState) -> None:
        state.executing = False
        state.idle.set()
        if state.pending_content is not None and state.preempting == 0:
            self._cancel_debounce(state)
            self._begin_execution(state)
            self._task_group.start_soon(self._flush, thread_id, state)

    async def _flush(self, thread_id: ThreadId, state: ThreadEditState) -> None:
        try:
            while state.pending_content is not None and state.preempting == 0:
                content, waiters = state.take_pending()
                assert content is not None
                try:
                    result = await self._execute(thread_id, state, content)
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        "edit.send_failed",
                        thread_id=thread_id,
                        waiters=len(waiters),
                        error=str(exc),
                        error_type=exc.__class__.__name__,
                    )
                    for waiter in waiters:
                        waiter.fail(exc)
                    continue
                for waiter in waiters:
                    waiter.resolve(result)
        finally:
            state.executing = False
            state.idle.set()

    async def _execute(
        self,
        thread_id: ThreadId,
        state: ThreadEditState,
        content: str,
    ) -> DeliveredMessage:
        async with self._serializer.lock(thread_id):
            delivered = await self._transport.post(thread_id, content)
            previous = state.recall_handle
            if previous is not None:
                state.last_recall = await self._recall(thread_id, previous)
            state.recall_handle = delivered.recall_handle
            state.message_id = delivered.message_id
        log_pipeline(
            logger,
            "edit.delivered",
            thread_id=thread_id,
            message_id=delivered.message_id,
            recalled=previous is not None,
        )
        return delivered

    async def _recall(self, thread_id: ThreadId, recall_handle: str) -> RecallOutcome:
        try:
            ok = await self._transport.recall(thread_id, recall_handle)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "edit.recall_failed",
                thread_id=thread_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return RecallOutcome(ok=False, error=str(exc) or exc.__class__.__name__)
        if not ok:
            logger.warning("edit.recall_rejected", thread_id=thread_id)
            return RecallOutcome(ok=False, error="recall rejected")
        return RecallOutcome(ok=True)
