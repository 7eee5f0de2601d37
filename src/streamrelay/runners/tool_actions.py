from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ..model import ActionKind

PATH_KEYS: tuple[str, ...] = ("file_path", "filePath", "path")
COMMAND_PREVIEW_CHARS = 60


@dataclass(frozen=True, slots=True)
class ToolCall:
    name: str
    input: Mapping[str, Any]

    @property
    def name_lower(self) -> str:
        return self.name.lower()


@dataclass(frozen=True, slots=True)
class ToolRule:
    """One classification rule; rules are tried in order, first match wins."""

    label: str
    matches: Callable[[ToolCall], bool]
    classify: Callable[[ToolCall], tuple[ActionKind, str]]


def tool_input_path(
    tool_input: Mapping[str, Any],
    *,
    path_keys: Sequence[str] = PATH_KEYS,
) -> str | None:
    for key in path_keys:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def tool_input_command(tool_input: Mapping[str, Any]) -> str | None:
    command = tool_input.get("command")
    if isinstance(command, str) and command:
        return command
    return None


def command_preview(command: str, *, width: int = COMMAND_PREVIEW_CHARS) -> str:
    if len(command) <= width:
        return command
    return command[: width - 3] + "..."


def name_contains(*needles: str) -> Callable[[ToolCall], bool]:
    def _matches(call: ToolCall) -> bool:
        return any(needle in call.name_lower for needle in needles)

    return _matches


def _has_path(call: ToolCall) -> bool:
    return tool_input_path(call.input) is not None


def _writes_path(call: ToolCall) -> bool:
    return _has_path(call) and name_contains("write", "edit", "create")(call)


def _has_command(call: ToolCall) -> bool:
    return tool_input_command(call.input) is not None


def _path_title(call: ToolCall) -> str:
    return tool_input_path(call.input) or call.name


def _command_title(call: ToolCall) -> str:
    return command_preview(tool_input_command(call.input) or call.name)


TOOL_RULES: tuple[ToolRule, ...] = (
    ToolRule(
        "file_change",
        matches=_writes_path,
        classify=lambda call: ("file_change", _path_title(call)),
    ),
    ToolRule(
        "path",
        matches=_has_path,
        classify=lambda call: ("tool", _path_title(call)),
    ),
    ToolRule(
        "command",
        matches=_has_command,
        classify=lambda call: ("command", _command_title(call)),
    ),
    ToolRule(
        "web_search",
        matches=name_contains("search", "web"),
        classify=lambda call: ("web_search", call.name),
    ),
    ToolRule(
        "subagent",
        matches=name_contains("task", "agent"),
        classify=lambda call: ("subagent", call.name),
    ),
)


def tool_kind_and_title(
    tool_name: str,
    tool_input: Mapping[str, Any],
    *,
    rules: Sequence[ToolRule] = TOOL_RULES,
) -> tuple[ActionKind, str]:
    call = ToolCall(name=tool_name, input=tool_input)
    for rule in rules:
        if rule.matches(call):
            return rule.classify(call)
    return "tool", tool_name
