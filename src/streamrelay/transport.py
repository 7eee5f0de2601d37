from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

type ThreadId = int | str
type MessageId = int | str


@dataclass(frozen=True, slots=True)
class DeliveredMessage:
    message_id: MessageId
    thread_id: ThreadId | None = None
    recall_handle: str | None = None
    raw: Any | None = field(default=None, compare=False, hash=False)

    @property
    def can_recall(self) -> bool:
        return self.recall_handle is not None


@dataclass(frozen=True, slots=True)
class RecallOutcome:
    """Best-effort result of retracting a superseded message."""

    ok: bool
    error: str | None = None


class EditNotSupportedError(RuntimeError):
    """Raised by ``Transport.edit`` on platforms that cannot edit messages."""


class Transport(Protocol):
    async def post(self, thread_id: ThreadId, content: str) -> DeliveredMessage: ...

    async def edit(
        self,
        thread_id: ThreadId,
        message_id: MessageId,
        content: str,
    ) -> DeliveredMessage: ...

    async def recall(self, thread_id: ThreadId, recall_handle: str) -> bool: ...
