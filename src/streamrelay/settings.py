from __future__ import annotations

from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from .edits import DEBOUNCE_S, MAX_WAIT_S
from .markdown import MAX_STREAMING_TEXT
from .render import MAX_BODY_CHARS
from .throttle import ACTION_UPDATE_INTERVAL_S, TEXT_UPDATE_INTERVAL_S

ENV_PREFIX = "STREAMRELAY_"


class ConfigError(RuntimeError):
    pass


class DeliverySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text_interval_s: float = Field(default=TEXT_UPDATE_INTERVAL_S, ge=0)
    action_interval_s: float = Field(default=ACTION_UPDATE_INTERVAL_S, ge=0)
    max_streaming_chars: int = Field(default=MAX_STREAMING_TEXT, gt=0)
    max_body_chars: int = Field(default=MAX_BODY_CHARS, gt=0)
    max_actions: int | None = Field(default=None, gt=0)
    show_actions: bool = True


class EditSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    debounce_s: float = Field(default=DEBOUNCE_S, ge=0)
    max_wait_s: float = Field(default=MAX_WAIT_S, ge=0)
    native_edit: bool = True

    @model_validator(mode="after")
    def _check_bounds(self) -> EditSettings:
        if self.max_wait_s < self.debounce_s:
            raise ValueError("edits.max_wait_s must not be shorter than debounce_s")
        return self


class OpenCodeSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cmd: str = "opencode"
    model: str | None = None
    session_title: str = "opencode"

    @field_validator("cmd", "session_title", mode="before")
    @classmethod
    def _validate_strings(cls, value: Any, info) -> Any:
        if not isinstance(value, str):
            raise ValueError(f"{info.field_name} must be a string")
        cleaned = value.strip()
        if not cleaned:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return cleaned

    @field_validator("model", mode="before")
    @classmethod
    def _validate_model(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("model must be a string")
        return value.strip() or None


class RelaySettings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
    )

    debug: bool = False
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    edits: EditSettings = Field(default_factory=EditSettings)
    opencode: OpenCodeSettings = Field(default_factory=OpenCodeSettings)


def _format_validation_error(exc: ValidationError) -> str:
    lines = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        lines.append(f"{location}: {message}" if location else message)
    return "\n".join(lines) or str(exc)


def load_settings(**overrides: Any) -> RelaySettings:
    try:
        return RelaySettings(**overrides)
    except ValidationError as exc:
        raise ConfigError(
            f"Invalid relay settings:\n{_format_validation_error(exc)}"
        ) from exc
