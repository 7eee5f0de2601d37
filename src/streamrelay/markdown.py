"""Markdown rendering of per-turn progress and final answers."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .model import Action
from .progress import ProgressState

STATUS = {"running": "▸", "update": "↻", "done": "✓", "fail": "✗"}
HEADER_SEP = " · "
MAX_PROGRESS_CMD_LEN = 300
MAX_STREAMING_TEXT = 2000
CURSOR = " ▍"
MAX_FILE_CHANGES_INLINE = 3
PLACEHOLDER = "_Thinking..._"


@dataclass(frozen=True, slots=True)
class MarkdownParts:
    header: str | None = None
    body: str | None = None
    footer: str | None = None


def assemble_markdown_parts(parts: MarkdownParts) -> str:
    return "\n\n".join(
        chunk for chunk in (parts.header, parts.body, parts.footer) if chunk
    )


def format_elapsed(elapsed_s: float) -> str:
    total = max(0, int(elapsed_s))
    minutes, seconds = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {seconds:02d}s"
    return f"{seconds}s"


def format_footer(
    elapsed_s: float,
    *,
    label: str | None = None,
    model: str | None = None,
) -> str:
    parts: list[str] = []
    if label:
        parts.append(label)
    parts.append(format_elapsed(elapsed_s))
    if model:
        parts.append(model)
    return HEADER_SEP.join(parts)


def shorten(text: str, width: int | None) -> str:
    if width is None:
        return text
    if width <= 0:
        return ""
    if len(text) <= width:
        return text
    return text[: width - 1] + "…"


def action_status(
    *,
    completed: bool,
    ok: bool | None = None,
    exit_code: int | None = None,
) -> str:
    if not completed:
        return STATUS["running"]
    if ok is not None:
        return STATUS["done"] if ok else STATUS["fail"]
    if exit_code is not None and exit_code != 0:
        return STATUS["fail"]
    return STATUS["done"]


def action_suffix(exit_code: int | None) -> str:
    if exit_code is not None and exit_code != 0:
        return f" (exit {exit_code})"
    return ""


def _exit_code(action: Action) -> int | None:
    exit_code = action.detail.get("exit_code")
    if isinstance(exit_code, int) and not isinstance(exit_code, bool):
        return exit_code
    return None


def _tool_name(action: Action) -> str | None:
    name = action.detail.get("name")
    return name if isinstance(name, str) and name else None


def format_file_change_title(action: Action, *, command_width: int | None) -> str:
    changes = action.detail.get("changes")
    rendered: list[str] = []
    if isinstance(changes, list):
        for raw in changes:
            if not isinstance(raw, dict):
                continue
            path = raw.get("path")
            if not isinstance(path, str) or not path:
                continue
            verb = raw.get("kind")
            if not isinstance(verb, str) or not verb:
                verb = "update"
            rendered.append(f"{verb} `{path}`")
    if not rendered:
        return f"files: {shorten(action.title, command_width)}"
    if len(rendered) > MAX_FILE_CHANGES_INLINE:
        remaining = len(rendered) - MAX_FILE_CHANGES_INLINE
        inline = ", ".join(rendered[:MAX_FILE_CHANGES_INLINE])
        return f"files: {shorten(f'{inline}, …({remaining} more)', command_width)}"
    return f"files: {shorten(', '.join(rendered), command_width)}"


def format_action_title(
    action: Action, *, command_width: int | None = MAX_PROGRESS_CMD_LEN
) -> str:
    title = action.title
    match action.kind:
        case "command":
            return f"`{shorten(title, command_width)}`"
        case "file_change":
            return format_file_change_title(action, command_width=command_width)
        case "tool" | "web_search" | "subagent":
            name = _tool_name(action)
            if name and title and name != title:
                return f"{name}{HEADER_SEP}`{shorten(title, command_width)}`"
            if name:
                return name
            return shorten(title, command_width)
    return shorten(title, command_width)


def format_action_line(
    action: Action,
    phase: str,
    ok: bool | None = None,
    *,
    command_width: int | None = MAX_PROGRESS_CMD_LEN,
) -> str:
    title = format_action_title(action, command_width=command_width)
    if phase != "completed":
        status = STATUS["update"] if phase == "updated" else STATUS["running"]
        return f"{status} {title}"
    exit_code = _exit_code(action)
    status = action_status(completed=True, ok=ok, exit_code=exit_code)
    return f"{status} {title}{action_suffix(exit_code)}"


def streaming_preview(
    text: str | None, *, max_chars: int = MAX_STREAMING_TEXT
) -> str | None:
    """Tail of in-progress text with a trailing cursor, or None when empty."""
    if not text:
        return None
    if len(text) > max_chars:
        text = text[len(text) - max_chars :]
    return text + CURSOR


def render_progress_markdown(
    elapsed_s: float,
    action_lines: Sequence[str],
    streaming_text: str | None,
    *,
    label: str = STATUS["running"],
    model: str | None = None,
    header: str | None = None,
    max_streaming_chars: int = MAX_STREAMING_TEXT,
) -> str:
    blocks: list[str] = []
    if header:
        blocks.append(header)
    preview = streaming_preview(streaming_text, max_chars=max_streaming_chars)
    if preview:
        blocks.append(preview)
    if action_lines:
        blocks.append("\n".join(action_lines))
    blocks.append(format_footer(elapsed_s, label=label, model=model))
    return "\n\n".join(blocks)


def render_error_markdown(message: str) -> str:
    message = message.strip() or "error"
    return f"{message}\n\n{STATUS['fail']}{HEADER_SEP}error"


def final_answer_body(answer: str, *, ok: bool, error: str | None) -> str:
    if ok or not error:
        return answer
    if answer.strip():
        return f"{answer}\n\n{error}"
    return error


class MarkdownFormatter:
    def __init__(
        self,
        *,
        max_actions: int | None = None,
        command_width: int | None = MAX_PROGRESS_CMD_LEN,
        max_streaming_chars: int = MAX_STREAMING_TEXT,
        show_model: bool = True,
    ) -> None:
        self.max_actions = max_actions
        self.command_width = command_width
        self.max_streaming_chars = max_streaming_chars
        self.show_model = show_model

    def _action_lines(self, state: ProgressState) -> list[str]:
        lines = [
            format_action_line(
                entry.action,
                entry.phase,
                entry.ok,
                command_width=self.command_width,
            )
            for entry in state.actions
        ]
        if self.max_actions is not None and len(lines) > self.max_actions:
            lines = lines[-self.max_actions :]
        return lines

    def render_progress(
        self,
        state: ProgressState,
        *,
        elapsed_s: float,
        label: str = STATUS["running"],
    ) -> str:
        return render_progress_markdown(
            elapsed_s,
            self._action_lines(state),
            state.streaming_text,
            label=label,
            model=state.model if self.show_model else None,
            max_streaming_chars=self.max_streaming_chars,
        )

    def render_final_parts(
        self,
        state: ProgressState,
        *,
        elapsed_s: float,
        ok: bool,
        answer: str,
        error: str | None = None,
    ) -> MarkdownParts:
        body = final_answer_body(answer, ok=ok, error=error)
        label = STATUS["done"] if ok else STATUS["fail"]
        return MarkdownParts(
            body=body or None,
            footer=format_footer(
                elapsed_s,
                label=label,
                model=state.model if self.show_model else None,
            ),
        )

