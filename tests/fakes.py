from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

import anyio

from streamrelay.model import CompletedEvent, RelayEvent, ResumeToken
from streamrelay.transport import (
    DeliveredMessage,
    EditNotSupportedError,
    MessageId,
    ThreadId,
)


class FakeClock:
    """Manually advanced clock whose ``sleep`` wakes when time passes its deadline."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start
        self._sleepers: list[tuple[float, int, anyio.Event]] = []
        self._seq = 0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            await anyio.sleep(0)
            return
        event = anyio.Event()
        self._seq += 1
        self._sleepers.append((self.now + delay, self._seq, event))
        await event.wait()

    @property
    def sleeping(self) -> int:
        return sum(1 for _, _, event in self._sleepers if not event.is_set())

    async def settle(self) -> None:
        await anyio.wait_all_tasks_blocked()

    async def advance(self, seconds: float) -> None:
        await self.settle()
        target = self.now + seconds
        while True:
            due = [entry for entry in self._sleepers if entry[0] <= target]
            if not due:
                break
            entry = min(due)
            self._sleepers.remove(entry)
            deadline, _, event = entry
            self.now = max(self.now, deadline)
            event.set()
            await self.settle()
        self.now = target
        await self.settle()


@dataclass(slots=True)
class PostCall:
    thread_id: ThreadId
    message_id: MessageId
    content: str


class FakeTransport:
    def __init__(self, *, native_edit: bool = False) -> None:
        self.native_edit = native_edit
        self._next_id = 1
        self.posts: list[PostCall] = []
        self.edits: list[PostCall] = []
        self.recalls: list[tuple[ThreadId, str]] = []
        self.visible: dict[ThreadId, dict[MessageId, str]] = {}
        self.recall_result = True
        self.recall_error: Exception | None = None
        self.post_errors: list[Exception] = []
        self.post_gate: anyio.Event | None = None
        self.in_flight_posts = 0
        self.max_in_flight_posts = 0

    def messages(self, thread_id: ThreadId) -> list[str]:
        return list(self.visible.get(thread_id, {}).values())

    def contents(self) -> list[str]:
        return [call.content for call in self.posts]

    async def post(self, thread_id: ThreadId, content: str) -> DeliveredMessage:
        self.in_flight_posts += 1
        self.max_in_flight_posts = max(self.max_in_flight_posts, self.in_flight_posts)
        try:
            if self.post_gate is not None:
                await self.post_gate.wait()
            if self.post_errors:
                raise self.post_errors.pop(0)
            message_id = self._next_id
            self._next_id += 1
            self.posts.append(PostCall(thread_id, message_id, content))
            self.visible.setdefault(thread_id, {})[message_id] = content
            return DeliveredMessage(
                message_id=message_id,
                thread_id=thread_id,
                recall_handle=f"r{message_id}",
            )
        finally:
            self.in_flight_posts -= 1

    async def edit(
        self, thread_id: ThreadId, message_id: MessageId, content: str
    ) -> DeliveredMessage:
        if not self.native_edit:
            raise EditNotSupportedError("edit not supported")
        self.edits.append(PostCall(thread_id, message_id, content))
        self.visible.setdefault(thread_id, {})[message_id] = content
        return DeliveredMessage(
            message_id=message_id,
            thread_id=thread_id,
            recall_handle=f"r{message_id}",
        )

    async def recall(self, thread_id: ThreadId, recall_handle: str) -> bool:
        self.recalls.append((thread_id, recall_handle))
        if self.recall_error is not None:
            raise self.recall_error
        if not self.recall_result:
            return False
        message_id = int(recall_handle.removeprefix("r"))
        self.visible.get(thread_id, {}).pop(message_id, None)
        return True


class ScriptRunner:
    """Runner that yields a fixed list of events, optionally pausing between them."""

    engine = "opencode"

    def __init__(
        self,
        events: Sequence[RelayEvent],
        *,
        gate: anyio.Event | None = None,
        error: Exception | None = None,
        sleep_between: float = 0.0,
        clock: FakeClock | None = None,
    ) -> None:
        self.events = list(events)
        self.gate = gate
        self.error = error
        self.sleep_between = sleep_between
        self.clock = clock
        self.calls: list[tuple[str, ResumeToken | None]] = []

    def is_resume_line(self, line: str) -> bool:
        return line.strip().startswith("resume:")

    def format_resume(self, token: ResumeToken) -> str:
        return f"resume: {token.value}"

    def extract_resume(self, text: str | None) -> ResumeToken | None:
        if not text:
            return None
        for line in text.splitlines():
            if self.is_resume_line(line):
                value = line.split(":", 1)[1].strip()
                return ResumeToken(engine=self.engine, value=value)
        return None

    async def run(
        self, prompt: str, resume: ResumeToken | None
    ) -> AsyncIterator[RelayEvent]:
        self.calls.append((prompt, resume))
        if self.gate is not None:
            await self.gate.wait()
        for evt in self.events:
            if isinstance(evt, CompletedEvent) and self.error is not None:
                raise self.error
            yield evt
            if self.sleep_between and self.clock is not None:
                await self.clock.sleep(self.sleep_between)
            else:
                await anyio.sleep(0)
        if self.error is not None and not any(
            isinstance(evt, CompletedEvent) for evt in self.events
        ):
            raise self.error
