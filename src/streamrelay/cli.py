from __future__ import annotations

import itertools
from collections.abc import AsyncIterator
from pathlib import Path

import anyio
import typer

from . import __version__
from .bridge import Bridge, BridgeConfig, RunOutcome
from .logging import get_logger, setup_logging
from .markdown import MarkdownFormatter
from .model import RelayEvent, ResumeToken
from .presenter import MarkdownPresenter
from .runner import Runner
from .runners.opencode import OpenCodeRunner
from .sessions import InMemorySessionStore
from .settings import ConfigError, RelaySettings, load_settings
from .transport import DeliveredMessage, EditNotSupportedError, MessageId, ThreadId

logger = get_logger(__name__)

CONSOLE_THREAD = "console"


class ConsoleTransport:
    """Prints every post, edit and recall to stdout."""

    def __init__(self, *, native_edit: bool = False) -> None:
        self.native_edit = native_edit
        self._ids = itertools.count(1)

    def _deliver(self, thread_id: ThreadId, message_id: MessageId) -> DeliveredMessage:
        return DeliveredMessage(
            message_id=message_id,
            thread_id=thread_id,
            recall_handle=f"recall-{message_id}",
        )

    async def post(self, thread_id: ThreadId, content: str) -> DeliveredMessage:
        message_id = next(self._ids)
        typer.echo(f"--- post #{message_id} [{thread_id}]")
        typer.echo(content)
        return self._deliver(thread_id, message_id)

    async def edit(
        self, thread_id: ThreadId, message_id: MessageId, content: str
    ) -> DeliveredMessage:
        if not self.native_edit:
            raise EditNotSupportedError("console transport edits are disabled")
        typer.echo(f"--- edit #{message_id} [{thread_id}]")
        typer.echo(content)
        return self._deliver(thread_id, message_id)

    async def recall(self, thread_id: ThreadId, recall_handle: str) -> bool:
        typer.echo(f"--- recall {recall_handle} [{thread_id}]")
        return True


class ReplayRunner:
    """Feed a recorded opencode JSONL file through the opencode translator."""

    def __init__(self, runner: OpenCodeRunner, lines: list[bytes]) -> None:
        self._runner = runner
        self._lines = lines
        self.engine = runner.engine

    def is_resume_line(self, line: str) -> bool:
        return self._runner.is_resume_line(line)

    def format_resume(self, token: ResumeToken) -> str:
        return self._runner.format_resume(token)

    def extract_resume(self, text: str | None) -> ResumeToken | None:
        return self._runner.extract_resume(text)

    def run(
        self, prompt: str, resume: ResumeToken | None
    ) -> AsyncIterator[RelayEvent]:
        return self._runner.replay(self._lines, resume=resume)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _load_settings(*, debug: bool) -> RelaySettings:
    try:
        settings = load_settings()
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    setup_logging(debug=debug or settings.debug)
    return settings


def _build_runner(settings: RelaySettings) -> OpenCodeRunner:
    return OpenCodeRunner(
        opencode_cmd=settings.opencode.cmd,
        model=settings.opencode.model,
        session_title=settings.opencode.session_title,
        cwd=Path.cwd(),
    )


def _bridge_config(settings: RelaySettings, *, native_edit: bool) -> BridgeConfig:
    delivery = settings.delivery
    formatter = MarkdownFormatter(
        max_actions=delivery.max_actions,
        max_streaming_chars=delivery.max_streaming_chars,
    )
    return BridgeConfig(
        transport=ConsoleTransport(native_edit=native_edit),
        session_store=InMemorySessionStore(),
        presenter=MarkdownPresenter(
            formatter=formatter, max_body_chars=delivery.max_body_chars
        ),
        show_actions=delivery.show_actions,
        native_edit=native_edit,
        text_interval=delivery.text_interval_s,
        action_interval=delivery.action_interval_s,
        debounce_s=settings.edits.debounce_s,
        max_wait_s=settings.edits.max_wait_s,
    )


async def _run_turn(cfg: BridgeConfig, runner: Runner, text: str) -> RunOutcome:
    async with anyio.create_task_group() as tg:
        bridge = Bridge(cfg, task_group=tg)
        outcome = await bridge.handle_message(
            runner, thread_id=CONSOLE_THREAD, text=text
        )
        tg.cancel_scope.cancel()
    return outcome


def _exit_for(outcome: RunOutcome) -> None:
    if outcome.error is not None:
        raise typer.Exit(code=1)
    if outcome.completed is None or not outcome.completed.ok:
        raise typer.Exit(code=1)


_NATIVE_EDIT_OPTION = typer.Option(
    None,
    "--native-edit/--no-native-edit",
    help="Edit the progress message in place instead of send-new/recall-old.",
)


def replay(
    path: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="Recorded `opencode run --format json` output.",
    ),
    native_edit: bool | None = _NATIVE_EDIT_OPTION,
    debug: bool = typer.Option(False, "--debug", help="Log at debug level."),
) -> None:
    """Replay a recorded opencode JSONL stream to the console."""
    settings = _load_settings(debug=debug)
    lines = path.read_bytes().splitlines(keepends=True)
    runner = ReplayRunner(_build_runner(settings), lines)
    effective = settings.edits.native_edit if native_edit is None else native_edit
    cfg = _bridge_config(settings, native_edit=effective)
    outcome = anyio.run(_run_turn, cfg, runner, f"replay {path.name}")
    _exit_for(outcome)


def run(
    prompt: str = typer.Argument(..., help="Prompt to send to opencode."),
    native_edit: bool | None = _NATIVE_EDIT_OPTION,
    debug: bool = typer.Option(False, "--debug", help="Log at debug level."),
) -> None:
    """Run opencode once and stream its progress to the console."""
    settings = _load_settings(debug=debug)
    runner = _build_runner(settings)
    effective = settings.edits.native_edit if native_edit is None else native_edit
    cfg = _bridge_config(settings, native_edit=effective)
    outcome = anyio.run(_run_turn, cfg, runner, prompt)
    _exit_for(outcome)


def app_main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Stream coding-agent turns into chat threads."""


def create_app() -> typer.Typer:
    app = typer.Typer(add_completion=False, no_args_is_help=True)
    app.callback()(app_main)
    app.command(name="replay")(replay)
    app.command(name="run")(run)
    return app


def main() -> None:
    app = create_app()
    app()


if __name__ == "__main__":
    main()
