"""Bridge orchestration: run an agent turn and stream its progress to a thread."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial

import anyio
from anyio.abc import TaskGroup

from .edits import DEBOUNCE_S, MAX_WAIT_S, EditEmulator
from .logging import bind_run_context, clear_context, get_logger
from .markdown import PLACEHOLDER
from .model import CompletedEvent, RelayEvent, ResumeToken, StartedEvent
from .presenter import MarkdownPresenter, Presenter
from .progress import ProgressTracker
from .runner import Runner
from .serializer import ThreadSerializer
from .sessions import SessionStore
from .throttle import ACTION_UPDATE_INTERVAL_S, TEXT_UPDATE_INTERVAL_S, DeliveryThrottle
from .transport import DeliveredMessage, EditNotSupportedError, ThreadId, Transport

logger = get_logger(__name__)


def _log_runner_event(evt: RelayEvent) -> None:
    logger.debug("runner.event", event_type=evt.type, engine=evt.engine)


def _strip_resume_lines(text: str, *, is_resume_line: Callable[[str], bool]) -> str:
    stripped_lines = [line for line in text.splitlines() if not is_resume_line(line)]
    prompt = "\n".join(stripped_lines).strip()
    return prompt or "continue"


def _flatten_exception_group(error: BaseException) -> list[BaseException]:
    if isinstance(error, BaseExceptionGroup):
        flattened: list[BaseException] = []
        for exc in error.exceptions:
            flattened.extend(_flatten_exception_group(exc))
        return flattened
    return [error]


def _format_error(error: Exception) -> str:
    cancel_exc = anyio.get_cancelled_exc_class()
    flattened = [
        exc
        for exc in _flatten_exception_group(error)
        if not isinstance(exc, cancel_exc)
    ]
    if not flattened:
        return str(error) or error.__class__.__name__
    if len(flattened) == 1:
        return str(flattened[0]) or flattened[0].__class__.__name__
    messages = [str(exc) for exc in flattened if str(exc)]
    if not messages:
        return str(error) or error.__class__.__name__
    return "\n".join(messages)


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    transport: Transport
    session_store: SessionStore | None = None
    presenter: Presenter = field(default_factory=MarkdownPresenter)
    show_actions: bool = True
    native_edit: bool = True
    text_interval: float = TEXT_UPDATE_INTERVAL_S
    action_interval: float = ACTION_UPDATE_INTERVAL_S
    debounce_s: float = DEBOUNCE_S
    max_wait_s: float = MAX_WAIT_S
    placeholder: str = PLACEHOLDER


@dataclass(slots=True)
class RunOutcome:
    completed: CompletedEvent | None = None
    resume: ResumeToken | None = None
    error: str | None = None
    delivered: list[DeliveredMessage] = field(default_factory=list)


class ProgressMessage:
    """The one visible message a turn keeps replacing.

    Uses the transport's native edit until it reports that editing is not
    supported, then routes every later update through the edit emulator.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        emulator: EditEmulator,
        thread_id: ThreadId,
        task_group: TaskGroup,
        native_edit: bool = True,
    ) -> None:
        self.transport = transport
        self.emulator = emulator
        self.thread_id = thread_id
        self.task_group = task_group
        self.native_edit = native_edit
        self.message: DeliveredMessage | None = None
        self.last_rendered: str | None = None
        self.finalized = False

    def _track(self, message: DeliveredMessage) -> None:
        self.message = message
        self.emulator.track_message(
            self.thread_id, message.recall_handle, message_id=message.message_id
        )

    async def post(self, content: str) -> DeliveredMessage:
        message = await self.transport.post(self.thread_id, content)
        self.last_rendered = content
        self._track(message)
        return message

    async def _edit_native(self, content: str) -> bool:
        if not self.native_edit or self.message is None:
            return False
        try:
            message = await self.transport.edit(
                self.thread_id, self.message.message_id, content
            )
        except EditNotSupportedError:
            logger.info("progress.native_edit.unsupported", thread_id=self.thread_id)
            self.native_edit = False
            return False
        self._track(message)
        return True

    async def update(self, content: str) -> None:
        if self.finalized or content == self.last_rendered:
            return
        self.last_rendered = content
        if await self._edit_native(content):
            return
        waiter = self.emulator.submit_edit(self.thread_id, content)
        self.task_group.start_soon(waiter.wait)

    async def finalize(self, content: str) -> DeliveredMessage:
        self.finalized = True
        self.last_rendered = content
        if await self._edit_native(content):
            assert self.message is not None
            return self.message
        message = await self.emulator.flush_now(self.thread_id, content)
        self.message = message
        return message


class Bridge:
    def __init__(
        self,
        cfg: BridgeConfig,
        *,
        task_group: TaskGroup,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self.cfg = cfg
        self.clock = clock
        self.sleep = sleep
        self.threads = ThreadSerializer()
        self.emulator = EditEmulator(
            cfg.transport,
            task_group=task_group,
            debounce_s=cfg.debounce_s,
            max_wait_s=cfg.max_wait_s,
            clock=clock,
            sleep=sleep,
        )

    async def handle_message(
        self,
        runner: Runner,
        *,
        thread_id: ThreadId,
        text: str,
        resume: ResumeToken | None = None,
    ) -> RunOutcome:
        """Run one turn for ``thread_id``; turns for the same thread queue up."""
        if self.threads.is_busy(thread_id):
            logger.info(
                "handle.queued",
                thread_id=thread_id,
                waiting=self.threads.waiting(thread_id) + 1,
            )
        return await self.threads.with_lock(
            thread_id, self._run_turn, runner, thread_id, text, resume
        )

    async def _resolve_resume(
        self,
        runner: Runner,
        thread_id: ThreadId,
        text: str,
        resume: ResumeToken | None,
    ) -> ResumeToken | None:
        if resume is not None:
            return resume
        resume = runner.extract_resume(text)
        if resume is not None:
            return resume
        store = self.cfg.session_store
        if store is None:
            return None
        return await store.get(thread_id, runner.engine)

    async def _save_session(self, thread_id: ThreadId, token: ResumeToken) -> None:
        store = self.cfg.session_store
        if store is None:
            return
        await store.set(thread_id, token)
        logger.debug("session.saved", thread_id=thread_id, resume=token.value)

    async def _run_turn(
        self,
        runner: Runner,
        thread_id: ThreadId,
        text: str,
        resume: ResumeToken | None,
    ) -> RunOutcome:
        cfg = self.cfg
        started_at = self.clock()
        bind_run_context(thread_id=thread_id, engine=runner.engine)
        resume = await self._resolve_resume(runner, thread_id, text, resume)
        prompt = _strip_resume_lines(text, is_resume_line=runner.is_resume_line)
        logger.info(
            "handle.incoming",
            thread_id=thread_id,
            resume=resume.value if resume else None,
            prompt_len=len(prompt),
        )

        tracker = ProgressTracker(engine=runner.engine, show_actions=cfg.show_actions)
        outcome = RunOutcome(resume=resume)
        progress: ProgressMessage | None = None

        def elapsed() -> float:
            return self.clock() - started_at

        async def deliver_progress() -> None:
            assert progress is not None
            content = cfg.presenter.render_progress(
                tracker.snapshot(), elapsed_s=elapsed()
            )
            await progress.update(content)

        async def deliver_final(completed: CompletedEvent) -> list[DeliveredMessage]:
            assert progress is not None
            messages = cfg.presenter.render_final(
                tracker.snapshot(),
                elapsed_s=elapsed(),
                ok=completed.ok,
                answer=completed.answer,
                error=completed.error,
            )
            delivered = [await progress.finalize(messages[0])]
            for extra in messages[1:]:
                delivered.append(await cfg.transport.post(thread_id, extra))
            return delivered

        try:
            async with anyio.create_task_group() as tg:
                progress = ProgressMessage(
                    transport=cfg.transport,
                    emulator=self.emulator,
                    thread_id=thread_id,
                    task_group=tg,
                    native_edit=cfg.native_edit,
                )
                await progress.post(cfg.placeholder)
                throttle = DeliveryThrottle(
                    deliver=deliver_progress,
                    task_group=tg,
                    is_streaming=lambda: bool(tracker.streaming_text),
                    text_interval=cfg.text_interval,
                    action_interval=cfg.action_interval,
                    clock=self.clock,
                    sleep=self.sleep,
                )
                async for evt in runner.run(prompt, resume):
                    _log_runner_event(evt)
                    if outcome.completed is not None:
                        continue
                    changed = tracker.note_event(evt)
                    match evt:
                        case StartedEvent(resume=token):
                            outcome.resume = token
                            bind_run_context(resume=token.value)
                            await self._save_session(thread_id, token)
                            await throttle.request_flush(force=True)
                        case CompletedEvent():
                            outcome.completed = evt
                            if evt.resume is not None:
                                outcome.resume = evt.resume
                                await self._save_session(thread_id, evt.resume)
                            outcome.delivered = await throttle.complete(
                                partial(deliver_final, evt)
                            )
                        case _:
                            if changed:
                                await throttle.request_flush()

                if outcome.completed is None:
                    completed = CompletedEvent(
                        engine=runner.engine,
                        ok=False,
                        answer="",
                        resume=outcome.resume,
                        error="runner finished without a completed event",
                    )
                    outcome.completed = completed
                    outcome.delivered = await throttle.complete(
                        partial(deliver_final, completed)
                    )

            completed = outcome.completed
            assert completed is not None
            logger.info(
                "runner.completed",
                ok=completed.ok,
                error=completed.error,
                answer_len=len(completed.answer),
                elapsed_s=round(elapsed(), 2),
                action_count=tracker.action_count,
                resume=outcome.resume.value if outcome.resume else None,
            )
        except Exception as exc:
            outcome.error = _format_error(exc)
            logger.exception(
                "handle.runner_failed",
                error=outcome.error,
                error_type=exc.__class__.__name__,
            )
            outcome.delivered = [
                await self._deliver_error(thread_id, progress, outcome.error)
            ]
        finally:
            self.emulator.cleanup(thread_id)
            clear_context()
        return outcome

    async def _deliver_error(
        self,
        thread_id: ThreadId,
        progress: ProgressMessage | None,
        message: str,
    ) -> DeliveredMessage:
        content = self.cfg.presenter.render_error(message)
        if progress is not None and progress.message is not None:
            try:
                return await progress.finalize(content)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "handle.error.finalize_failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
        return await self.cfg.transport.post(thread_id, content)
