from __future__ import annotations

from dataclasses import dataclass

from .model import (
    Action,
    ActionEvent,
    ActionPhase,
    CompletedEvent,
    EngineId,
    RelayEvent,
    ResumeToken,
    StartedEvent,
    TextEvent,
    TextFinishedEvent,
)


@dataclass(frozen=True, slots=True)
class ActionState:
    action: Action
    phase: ActionPhase
    ok: bool | None
    first_seen: int


@dataclass(frozen=True, slots=True)
class ProgressState:
    engine: EngineId
    actions: tuple[ActionState, ...]
    streaming_text: str | None
    model: str | None
    resume: ResumeToken | None
    action_count: int


class ProgressTracker:
    """Fold relay events into what the progress message should show.

    Action lines are keyed by action id and keep the position where the id
    was first seen; a completion replaces its started line in place.
    """

    def __init__(self, *, engine: EngineId, show_actions: bool = True) -> None:
        self.engine = engine
        self.show_actions = show_actions
        self.resume: ResumeToken | None = None
        self.model: str | None = None
        self.streaming_text: str | None = None
        self.action_count = 0
        self._actions: dict[str, ActionState] = {}
        self._seq = 0

    def note_event(self, event: RelayEvent) -> bool:
        """Apply ``event``; return True when the rendered progress may change."""
        match event:
            case StartedEvent(resume=resume, model=model):
                self.resume = resume
                if model:
                    self.model = model
                return True
            case ActionEvent(action=action, phase=phase, ok=ok):
                if not self.show_actions:
                    return False
                current = self._actions.get(action.id)
                if current is None:
                    self.action_count += 1
                    first_seen = self._seq
                    self._seq += 1
                else:
                    first_seen = current.first_seen
                self._actions[action.id] = ActionState(
                    action=action,
                    phase=phase,
                    ok=ok,
                    first_seen=first_seen,
                )
                return True
            case TextEvent(accumulated=accumulated):
                self.streaming_text = accumulated
                return True
            case TextFinishedEvent():
                self.streaming_text = None
                return True
            case CompletedEvent(resume=resume):
                if resume is not None:
                    self.resume = resume
                return True
        return False

    def snapshot(self) -> ProgressState:
        actions = tuple(
            sorted(self._actions.values(), key=lambda entry: entry.first_seen)
        )
        return ProgressState(
            engine=self.engine,
            actions=actions,
            streaming_text=self.streaming_text,
            model=self.model,
            resume=self.resume,
            action_count=self.action_count,
        )
