"""Event factory helpers for runner implementations."""

from __future__ import annotations

from typing import Any

from .model import (
    Action,
    ActionEvent,
    ActionKind,
    CompletedEvent,
    EngineId,
    ResumeToken,
    StartedEvent,
    TextEvent,
    TextFinishedEvent,
)


class EventFactory:
    __slots__ = ("engine", "_resume")

    def __init__(self, engine: EngineId) -> None:
        self.engine = engine
        self._resume: ResumeToken | None = None

    @property
    def resume(self) -> ResumeToken | None:
        return self._resume

    def started(
        self,
        token: ResumeToken,
        *,
        title: str | None = None,
        model: str | None = None,
    ) -> StartedEvent:
        if token.engine != self.engine:
            raise RuntimeError(f"resume token is for engine {token.engine!r}")
        if self._resume is not None and self._resume != token:
            raise RuntimeError(
                f"resume token mismatch: {self._resume.value} vs {token.value}"
            )
        self._resume = token
        return StartedEvent(engine=self.engine, resume=token, title=title, model=model)

    def action_started(
        self,
        *,
        action: Action,
    ) -> ActionEvent:
        return ActionEvent(engine=self.engine, action=action, phase="started")

    def action_completed(
        self,
        *,
        action_id: str,
        kind: ActionKind,
        title: str,
        ok: bool,
        detail: dict[str, Any] | None = None,
        message: str | None = None,
    ) -> ActionEvent:
        action = Action(
            id=action_id,
            kind=kind,
            title=title,
            detail=detail or {},
        )
        return ActionEvent(
            engine=self.engine,
            action=action,
            phase="completed",
            ok=ok,
            message=message,
        )

    def text(self, *, delta: str, accumulated: str) -> TextEvent:
        return TextEvent(engine=self.engine, delta=delta, accumulated=accumulated)

    def text_finished(self, *, text: str) -> TextFinishedEvent:
        return TextFinishedEvent(engine=self.engine, text=text)

    def completed(
        self,
        *,
        ok: bool,
        answer: str,
        resume: ResumeToken | None = None,
        error: str | None = None,
        usage: dict[str, Any] | None = None,
    ) -> CompletedEvent:
        resolved_resume = resume if resume is not None else self._resume
        return CompletedEvent(
            engine=self.engine,
            ok=ok,
            answer=answer,
            resume=resolved_resume,
            error=error,
            usage=usage,
        )

    def completed_ok(
        self,
        *,
        answer: str,
        resume: ResumeToken | None = None,
        usage: dict[str, Any] | None = None,
    ) -> CompletedEvent:
        return self.completed(ok=True, answer=answer, resume=resume, usage=usage)

    def completed_error(
        self,
        *,
        error: str,
        answer: str = "",
        resume: ResumeToken | None = None,
        usage: dict[str, Any] | None = None,
    ) -> CompletedEvent:
        return self.completed(
            ok=False,
            answer=answer,
            resume=resume,
            error=error,
            usage=usage,
        )
