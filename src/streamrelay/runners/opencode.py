"""OpenCode runner: ``opencode run --format json`` translated into relay events."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..events import EventFactory
from ..logging import get_logger
from ..model import Action, CompletedEvent, RelayEvent, ResumeToken
from ..runner import JsonlSubprocessRunner, ResumeTokenMixin
from ..schemas import opencode as opencode_schema
from .tool_actions import tool_input_path, tool_kind_and_title

logger = get_logger(__name__)

ENGINE = "opencode"
OUTPUT_PREVIEW_CHARS = 500
DEFAULT_ERROR = "opencode error"

_RESUME_RE = re.compile(
    r"(?im)^\s*`?opencode(?:\s+run)?\s+(?:--session|-s)\s+(?P<token>ses_[A-Za-z0-9]+)`?\s*$"
)
_RESUME_ANYWHERE_RE = re.compile(
    r"`?opencode(?:\s+run)?\s+(?:--session|-s)\s+(?P<token>ses_[A-Za-z0-9]+)`?"
)


@dataclass(slots=True)
class OpenCodeStreamState:
    pending_actions: dict[str, Action] = field(default_factory=dict)
    last_text: str = ""
    note_seq: int = 0
    session_id: str | None = None
    emitted_started: bool = False
    saw_step_finish: bool = False
    completed: bool = False
    model: str | None = None
    factory: EventFactory = field(default_factory=lambda: EventFactory(ENGINE))

    def resume_token(self) -> ResumeToken | None:
        if not self.session_id:
            return None
        return ResumeToken(engine=ENGINE, value=self.session_id)


def _as_mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _extract_tool_action(part: dict[str, Any]) -> Action | None:
    tool_state = _as_mapping(part.get("state"))

    call_id = part.get("callID")
    if not isinstance(call_id, str) or not call_id:
        call_id = part.get("id")
        if not isinstance(call_id, str) or not call_id:
            return None

    tool_name = part.get("tool")
    if not isinstance(tool_name, str) or not tool_name:
        tool_name = "tool"
    tool_input = _as_mapping(tool_state.get("input"))

    kind, title = tool_kind_and_title(tool_name, tool_input)
    state_title = tool_state.get("title")
    if isinstance(state_title, str) and state_title:
        title = state_title

    detail: dict[str, Any] = {
        "name": tool_name,
        "input": tool_input,
        "call_id": call_id,
    }
    if kind == "file_change":
        path = tool_input_path(tool_input)
        if path:
            detail["changes"] = [{"path": path, "kind": "update"}]

    return Action(id=call_id, kind=kind, title=title, detail=detail)


def _exit_code(tool_state: dict[str, Any]) -> int | None:
    exit_code = _as_mapping(tool_state.get("metadata")).get("exit")
    if isinstance(exit_code, int) and not isinstance(exit_code, bool):
        return exit_code
    return None


def _error_message(payload: Any) -> str:
    if payload is None:
        return DEFAULT_ERROR
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, dict):
            message = data.get("message")
            if isinstance(message, str) and message:
                return message
        for key in ("message", "name"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
        return DEFAULT_ERROR
    return str(payload)


def _usage(part: dict[str, Any]) -> dict[str, Any] | None:
    usage: dict[str, Any] = {}
    tokens = part.get("tokens")
    if isinstance(tokens, dict):
        usage["tokens"] = tokens
    cost = part.get("cost")
    if isinstance(cost, int | float) and not isinstance(cost, bool):
        usage["cost"] = cost
    return usage or None


def _translate_tool_use(
    part: dict[str, Any], *, state: OpenCodeStreamState
) -> list[RelayEvent]:
    action = _extract_tool_action(part)
    if action is None:
        return []
    factory = state.factory
    tool_state = _as_mapping(part.get("state"))
    status = tool_state.get("status")

    match status:
        case "pending":
            state.pending_actions[action.id] = action
            return [factory.action_started(action=action)]
        case "running":
            if action.id in state.pending_actions:
                return []
            state.pending_actions[action.id] = action
            return [factory.action_started(action=action)]
        case "completed":
            exit_code = _exit_code(tool_state)
            detail = dict(action.detail)
            output = tool_state.get("output")
            if output is not None:
                detail["output_preview"] = str(output)[:OUTPUT_PREVIEW_CHARS]
            detail["exit_code"] = exit_code
            state.pending_actions.pop(action.id, None)
            return [
                factory.action_completed(
                    action_id=action.id,
                    kind=action.kind,
                    title=action.title,
                    ok=exit_code is None or exit_code == 0,
                    detail=detail,
                )
            ]
        case "error":
            error = tool_state.get("error")
            detail = dict(action.detail)
            if error is not None:
                detail["error"] = error
            detail["exit_code"] = _exit_code(tool_state)
            state.pending_actions.pop(action.id, None)
            return [
                factory.action_completed(
                    action_id=action.id,
                    kind=action.kind,
                    title=action.title,
                    ok=False,
                    detail=detail,
                    message=str(error) if error is not None else None,
                )
            ]
        case _:
            return []


def translate_opencode_event(
    event: opencode_schema.OpenCodeEvent,
    *,
    title: str,
    state: OpenCodeStreamState,
) -> list[RelayEvent]:
    session_id = event.sessionID
    if isinstance(session_id, str) and session_id and state.session_id is None:
        state.session_id = session_id

    if state.completed:
        return []

    factory = state.factory
    match event:
        case opencode_schema.StepStart():
            token = state.resume_token()
            if state.emitted_started or token is None:
                return []
            state.emitted_started = True
            return [factory.started(token, title=title, model=state.model)]

        case opencode_schema.ToolUse(part=part):
            return _translate_tool_use(_as_mapping(part), state=state)

        case opencode_schema.Text(part=part):
            text = _as_mapping(part).get("text")
            if not isinstance(text, str) or not text:
                return []
            state.last_text += text
            return [factory.text(delta=text, accumulated=state.last_text)]

        case opencode_schema.StepFinish(part=part):
            part_map = _as_mapping(part)
            state.saw_step_finish = True
            reason = part_map.get("reason")
            if reason == "tool-calls":
                if not state.last_text:
                    return []
                text = state.last_text
                state.last_text = ""
                return [factory.text_finished(text=text)]
            if reason == "stop":
                state.completed = True
                return [
                    factory.completed_ok(
                        answer=state.last_text,
                        resume=state.resume_token(),
                        usage=_usage(part_map),
                    )
                ]
            return []

        case opencode_schema.Error(error=error, message=message):
            state.completed = True
            payload = message if message is not None else error
            return [
                factory.completed_error(
                    error=_error_message(payload),
                    answer=state.last_text,
                    resume=state.resume_token(),
                )
            ]

    return []


class OpenCodeRunner(ResumeTokenMixin, JsonlSubprocessRunner):
    engine = ENGINE
    resume_re = _RESUME_RE
    logger = logger

    def __init__(
        self,
        *,
        opencode_cmd: str = "opencode",
        model: str | None = None,
        session_title: str = "opencode",
        cwd: Path | None = None,
    ) -> None:
        self.opencode_cmd = opencode_cmd
        self.model = model
        self.session_title = session_title
        self.cwd = cwd

    def format_resume(self, token: ResumeToken) -> str:
        if token.engine != self.engine:
            raise RuntimeError(f"resume token is for engine {token.engine!r}")
        return f"`opencode --session {token.value}`"

    def extract_resume(self, text: str | None) -> ResumeToken | None:
        if not text:
            return None
        found: str | None = None
        for match in _RESUME_ANYWHERE_RE.finditer(text):
            found = match.group("token") or found
        if not found:
            return None
        return ResumeToken(engine=self.engine, value=found)

    def command(self) -> str:
        return self.opencode_cmd

    def build_args(
        self,
        prompt: str,
        resume: ResumeToken | None,
        *,
        state: Any,
    ) -> list[str]:
        args = ["run", "--format", "json"]
        if resume is not None:
            args.extend(["--session", resume.value])
        if self.model is not None:
            args.extend(["--model", self.model])
        args.extend(["--", prompt])
        return args

    def stdin_payload(
        self,
        prompt: str,
        resume: ResumeToken | None,
        *,
        state: Any,
    ) -> bytes | None:
        return None

    def new_state(
        self, prompt: str, resume: ResumeToken | None
    ) -> OpenCodeStreamState:
        return OpenCodeStreamState(model=self.model)

    def decode_jsonl(self, *, line: bytes) -> opencode_schema.OpenCodeEvent | None:
        return opencode_schema.decode_event(line)

    def translate(
        self,
        data: opencode_schema.OpenCodeEvent,
        *,
        state: OpenCodeStreamState,
        resume: ResumeToken | None,
        found_session: ResumeToken | None,
    ) -> list[RelayEvent]:
        return translate_opencode_event(
            data,
            title=self.session_title,
            state=state,
        )

    def process_error_events(
        self,
        rc: int,
        *,
        resume: ResumeToken | None,
        found_session: ResumeToken | None,
        state: OpenCodeStreamState,
        stderr: str = "",
    ) -> list[RelayEvent]:
        message = stderr.strip() or f"opencode failed (rc={rc})"
        state.completed = True
        return [
            CompletedEvent(
                engine=ENGINE,
                ok=False,
                answer=state.last_text,
                resume=found_session or resume,
                error=message,
            )
        ]

    def stream_end_events(
        self,
        *,
        resume: ResumeToken | None,
        found_session: ResumeToken | None,
        state: OpenCodeStreamState,
    ) -> list[RelayEvent]:
        state.completed = True
        if not state.saw_step_finish:
            return [
                CompletedEvent(
                    engine=ENGINE,
                    ok=False,
                    answer=state.last_text,
                    resume=found_session or resume,
                    error="opencode finished without a result event",
                )
            ]
        return [
            CompletedEvent(
                engine=ENGINE,
                ok=True,
                answer=state.last_text,
                resume=found_session or resume,
            )
        ]
