"""Relay domain model types (events, actions, resume tokens)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

type EngineId = str

type ActionKind = Literal[
    "command",
    "tool",
    "file_change",
    "web_search",
    "subagent",
]

type RelayEventType = Literal[
    "started",
    "action",
    "text",
    "text_finished",
    "completed",
]

type ActionPhase = Literal["started", "completed"]


@dataclass(frozen=True, slots=True)
class ResumeToken:
    engine: EngineId
    value: str


@dataclass(frozen=True, slots=True)
class Action:
    id: str
    kind: ActionKind
    title: str
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StartedEvent:
    type: Literal["started"] = field(default="started", init=False)
    engine: EngineId
    resume: ResumeToken
    title: str | None = None
    model: str | None = None


@dataclass(frozen=True, slots=True)
class ActionEvent:
    type: Literal["action"] = field(default="action", init=False)
    engine: EngineId
    action: Action
    phase: ActionPhase
    ok: bool | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class TextEvent:
    """Emitted for each streaming text chunk from the agent.

    ``accumulated`` is the full text of the current step so far, so the
    progress message can show a live preview without replaying deltas.
    """

    type: Literal["text"] = field(default="text", init=False)
    engine: EngineId
    delta: str
    accumulated: str


@dataclass(frozen=True, slots=True)
class TextFinishedEvent:
    """Emitted when a step's text is complete because the agent calls a tool.

    The accumulated text is reset afterwards, so text from consecutive steps
    never runs together.
    """

    type: Literal["text_finished"] = field(default="text_finished", init=False)
    engine: EngineId
    text: str


@dataclass(frozen=True, slots=True)
class CompletedEvent:
    type: Literal["completed"] = field(default="completed", init=False)
    engine: EngineId
    ok: bool
    answer: str
    resume: ResumeToken | None = None
    error: str | None = None
    usage: dict[str, Any] | None = None


type RelayEvent = (
    StartedEvent | ActionEvent | TextEvent | TextFinishedEvent | CompletedEvent
)
