from __future__ import annotations

from typing import Protocol

from .model import EngineId, ResumeToken
from .transport import ThreadId


class SessionStore(Protocol):
    async def get(self, thread_key: ThreadId, engine: EngineId) -> ResumeToken | None: ...

    async def set(self, thread_key: ThreadId, token: ResumeToken) -> None: ...


class InMemorySessionStore:
    """Resume tokens per (thread, engine), kept for the life of the process."""

    def __init__(self) -> None:
        self._tokens: dict[tuple[ThreadId, EngineId], ResumeToken] = {}

    def __len__(self) -> int:
        return len(self._tokens)

    async def get(self, thread_key: ThreadId, engine: EngineId) -> ResumeToken | None:
        return self._tokens.get((thread_key, engine))

    async def set(self, thread_key: ThreadId, token: ResumeToken) -> None:
        self._tokens[(thread_key, token.engine)] = token

    async def clear(self, thread_key: ThreadId) -> None:
        for key in [key for key in self._tokens if key[0] == thread_key]:
            del self._tokens[key]
