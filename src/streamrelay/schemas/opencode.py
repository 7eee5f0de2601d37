"""Msgspec models and decoder for opencode --format json output."""

from __future__ import annotations

from typing import Any

import msgspec


class _Event(msgspec.Struct, tag_field="type", forbid_unknown_fields=False):
    timestamp: int | None = None
    sessionID: str | None = None


class StepStart(_Event, tag="step_start"):
    part: dict[str, Any] | None = None


class StepFinish(_Event, tag="step_finish"):
    part: dict[str, Any] | None = None


class ToolUse(_Event, tag="tool_use"):
    part: dict[str, Any] | None = None


class Text(_Event, tag="text"):
    part: dict[str, Any] | None = None


class Error(_Event, tag="error"):
    error: Any = None
    message: Any = None


type OpenCodeEvent = StepStart | StepFinish | ToolUse | Text | Error

EVENT_TYPES = frozenset({"step_start", "step_finish", "tool_use", "text", "error"})


def decode_event(line: str | bytes) -> OpenCodeEvent | None:
    """Decode one JSONL line.

    Returns ``None`` for a well-formed event whose ``type`` is not one we
    know. Raises ``msgspec.DecodeError`` for invalid JSON and
    ``msgspec.ValidationError`` for a payload that is not an event object.
    """
    raw = msgspec.json.decode(line)
    if not isinstance(raw, dict):
        raise msgspec.ValidationError("expected a JSON object")
    event_type = raw.get("type")
    if not isinstance(event_type, str):
        raise msgspec.ValidationError("missing string `type` field")
    if event_type not in EVENT_TYPES:
        return None
    return msgspec.convert(raw, OpenCodeEvent)
