from __future__ import annotations

from typing import Protocol

from .markdown import (
    STATUS,
    MarkdownFormatter,
    render_error_markdown,
)
from .progress import ProgressState
from .render import MAX_BODY_CHARS, prepare_multi_message


class Presenter(Protocol):
    def render_progress(
        self,
        state: ProgressState,
        *,
        elapsed_s: float,
        label: str = STATUS["running"],
    ) -> str: ...

    def render_final(
        self,
        state: ProgressState,
        *,
        elapsed_s: float,
        ok: bool,
        answer: str,
        error: str | None = None,
    ) -> list[str]: ...

    def render_error(self, message: str) -> str: ...


class MarkdownPresenter:
    def __init__(
        self,
        *,
        formatter: MarkdownFormatter | None = None,
        max_body_chars: int = MAX_BODY_CHARS,
    ) -> None:
        self.formatter = formatter or MarkdownFormatter()
        self.max_body_chars = max_body_chars

    def render_progress(
        self,
        state: ProgressState,
        *,
        elapsed_s: float,
        label: str = STATUS["running"],
    ) -> str:
        return self.formatter.render_progress(state, elapsed_s=elapsed_s, label=label)

    def render_final(
        self,
        state: ProgressState,
        *,
        elapsed_s: float,
        ok: bool,
        answer: str,
        error: str | None = None,
    ) -> list[str]:
        parts = self.formatter.render_final_parts(
            state, elapsed_s=elapsed_s, ok=ok, answer=answer, error=error
        )
        return prepare_multi_message(parts, max_body_chars=self.max_body_chars)

    def render_error(self, message: str) -> str:
        return render_error_markdown(message)
