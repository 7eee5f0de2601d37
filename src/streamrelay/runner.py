"""Runner protocol and shared runner definitions."""

from __future__ import annotations

import re
import subprocess
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import anyio

from .logging import get_logger, log_pipeline
from .model import (
    CompletedEvent,
    EngineId,
    RelayEvent,
    ResumeToken,
    StartedEvent,
)
from .serializer import ThreadSerializer
from .utils.streams import drain_stderr, iter_bytes_lines
from .utils.subprocess import manage_subprocess

STDERR_TAIL_LINES = 20


class ResumeTokenMixin:
    engine: EngineId
    resume_re: re.Pattern[str]

    def format_resume(self, token: ResumeToken) -> str:
        raise NotImplementedError

    def is_resume_line(self, line: str) -> bool:
        return bool(self.resume_re.match(line))

    def extract_resume(self, text: str | None) -> ResumeToken | None:
        if not text:
            return None
        found: str | None = None
        for match in self.resume_re.finditer(text):
            token = match.group("token")
            if token:
                found = token
        if not found:
            return None
        return ResumeToken(engine=self.engine, value=found)


class SessionLockMixin:
    engine: EngineId
    session_locks: ThreadSerializer | None = None

    def _session_locks(self) -> ThreadSerializer:
        locks = self.session_locks
        if locks is None:
            locks = ThreadSerializer()
            self.session_locks = locks
        return locks

    @staticmethod
    def session_key(token: ResumeToken) -> str:
        return f"{token.engine}:{token.value}"

    async def run_with_resume_lock(
        self,
        prompt: str,
        resume: ResumeToken,
        run_fn: Callable[[str, ResumeToken | None], AsyncIterator[RelayEvent]],
    ) -> AsyncIterator[RelayEvent]:
        if resume.engine != self.engine:
            raise RuntimeError(
                f"resume token is for engine {resume.engine!r}, not {self.engine!r}"
            )
        async with self._session_locks().lock(self.session_key(resume)):
            async for evt in run_fn(prompt, resume):
                yield evt


class BaseRunner(SessionLockMixin):
    engine: EngineId

    def run(
        self, prompt: str, resume: ResumeToken | None
    ) -> AsyncIterator[RelayEvent]:
        return self.run_locked(prompt, resume)

    async def run_locked(
        self, prompt: str, resume: ResumeToken | None
    ) -> AsyncIterator[RelayEvent]:
        if resume is not None:
            async for evt in self.run_with_resume_lock(prompt, resume, self.run_impl):
                yield evt
            return

        # A fresh session only learns its key once the agent reports it.
        locks = self._session_locks()
        held: str | None = None
        try:
            async for evt in self.run_impl(prompt, None):
                if held is None and isinstance(evt, StartedEvent):
                    held = self.session_key(evt.resume)
                    await locks.acquire(held)
                yield evt
        finally:
            if held is not None:
                locks.release(held)

    async def run_impl(
        self, prompt: str, resume: ResumeToken | None
    ) -> AsyncIterator[RelayEvent]:
        if False:
            yield  # pragma: no cover
        raise NotImplementedError


@dataclass(slots=True)
class JsonlStreamState:
    expected_session: ResumeToken | None
    found_session: ResumeToken | None = None
    did_emit_completed: bool = False
    ignored_after_completed: bool = False
    jsonl_seq: int = 0
    stderr_tail: deque[str] = field(
        default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES)
    )


class JsonlSubprocessRunner(BaseRunner):
    """Spawn an agent CLI and translate its JSONL stdout into relay events.

    Subclasses supply the command line, decoding and translation. This class
    guarantees at most one ``StartedEvent`` and exactly one terminal
    ``CompletedEvent`` per run, synthesizing the latter when the agent exits
    without one.
    """

    cwd: Path | None = None

    def get_logger(self) -> Any:
        return getattr(self, "logger", get_logger(__name__))

    def command(self) -> str:
        raise NotImplementedError

    def tag(self) -> str:
        return str(self.engine)

    def build_args(
        self,
        prompt: str,
        resume: ResumeToken | None,
        *,
        state: Any,
    ) -> list[str]:
        raise NotImplementedError

    def stdin_payload(
        self,
        prompt: str,
        resume: ResumeToken | None,
        *,
        state: Any,
    ) -> bytes | None:
        return prompt.encode()

    def env(self, *, state: Any) -> dict[str, str] | None:
        return None

    def new_state(self, prompt: str, resume: ResumeToken | None) -> Any:
        raise NotImplementedError

    def pipes_error_message(self) -> str:
        return f"{self.tag()} failed to open subprocess pipes"

    def decode_jsonl(self, *, line: bytes) -> Any | None:
        raise NotImplementedError

    def translate(
        self,
        data: Any,
        *,
        state: Any,
        resume: ResumeToken | None,
        found_session: ResumeToken | None,
    ) -> list[RelayEvent]:
        raise NotImplementedError

    def process_error_events(
        self,
        rc: int,
        *,
        resume: ResumeToken | None,
        found_session: ResumeToken | None,
        state: Any,
        stderr: str = "",
    ) -> list[RelayEvent]:
        message = stderr.strip() or f"{self.tag()} failed (rc={rc})."
        return [
            CompletedEvent(
                engine=self.engine,
                ok=False,
                answer="",
                resume=found_session or resume,
                error=message,
            )
        ]

    def stream_end_events(
        self,
        *,
        resume: ResumeToken | None,
        found_session: ResumeToken | None,
        state: Any,
    ) -> list[RelayEvent]:
        message = f"{self.tag()} finished without a result event"
        return [
            CompletedEvent(
                engine=self.engine,
                ok=False,
                answer="",
                resume=found_session or resume,
                error=message,
            )
        ]

    def handle_started_event(
        self,
        event: StartedEvent,
        *,
        expected_session: ResumeToken | None,
        found_session: ResumeToken | None,
    ) -> tuple[ResumeToken | None, bool]:
        if event.engine != self.engine:
            raise RuntimeError(
                f"{self.tag()} emitted session token for engine {event.engine!r}"
            )
        if expected_session is not None and event.resume != expected_session:
            message = (
                f"{self.tag()} emitted session id {event.resume.value} "
                f"but expected {expected_session.value}"
            )
            raise RuntimeError(message)
        if found_session is None:
            return event.resume, True
        if event.resume != found_session:
            message = (
                f"{self.tag()} emitted session id {event.resume.value} "
                f"but expected {found_session.value}"
            )
            raise RuntimeError(message)
        return found_session, False

    def _decode_jsonl_events(
        self,
        *,
        line: bytes,
        jsonl_seq: int,
        state: Any,
        resume: ResumeToken | None,
        found_session: ResumeToken | None,
        logger: Any,
        pid: int | None,
    ) -> list[RelayEvent]:
        line_text = line.decode("utf-8", errors="replace")
        try:
            decoded = self.decode_jsonl(line=line)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "runner.jsonl.invalid",
                tag=self.tag(),
                pid=pid,
                jsonl_seq=jsonl_seq,
                line=line_text[:200],
                error=str(exc),
            )
            return []
        if decoded is None:
            log_pipeline(
                logger,
                "runner.jsonl.unknown_type",
                pid=pid,
                jsonl_seq=jsonl_seq,
                line=line_text[:200],
            )
            return []
        try:
            return self.translate(
                decoded,
                state=state,
                resume=resume,
                found_session=found_session,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "runner.translate.error",
                tag=self.tag(),
                pid=pid,
                jsonl_seq=jsonl_seq,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return []

    def _log_completed_event(
        self,
        *,
        logger: Any,
        pid: int | None,
        event: CompletedEvent,
        jsonl_seq: int | None = None,
        source: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "pid": pid,
            "ok": event.ok,
            "has_answer": bool(event.answer.strip()),
        }
        if jsonl_seq is not None:
            payload["jsonl_seq"] = jsonl_seq
        if source is not None:
            payload["source"] = source
        log_pipeline(logger, "runner.completed.seen", **payload)

    def handle_jsonl_line(
        self,
        *,
        raw_line: bytes,
        stream: JsonlStreamState,
        state: Any,
        resume: ResumeToken | None,
        logger: Any,
        pid: int | None = None,
    ) -> list[RelayEvent]:
        if stream.did_emit_completed:
            if not stream.ignored_after_completed:
                log_pipeline(logger, "runner.drop.jsonl_after_completed", pid=pid)
                stream.ignored_after_completed = True
            return []
        line = raw_line.strip()
        if not line:
            return []
        stream.jsonl_seq += 1
        seq = stream.jsonl_seq
        events = self._decode_jsonl_events(
            line=line,
            jsonl_seq=seq,
            state=state,
            resume=resume,
            found_session=stream.found_session,
            logger=logger,
            pid=pid,
        )
        output: list[RelayEvent] = []
        for evt in events:
            if isinstance(evt, StartedEvent):
                stream.found_session, emit = self.handle_started_event(
                    evt,
                    expected_session=stream.expected_session,
                    found_session=stream.found_session,
                )
                log_pipeline(
                    logger,
                    "runner.started.seen",
                    pid=pid,
                    jsonl_seq=seq,
                    resume=evt.resume.value,
                    emit=emit,
                )
                if not emit:
                    continue
            if isinstance(evt, CompletedEvent):
                stream.did_emit_completed = True
                self._log_completed_event(
                    logger=logger, pid=pid, event=evt, jsonl_seq=seq
                )
                output.append(evt)
                break
            output.append(evt)
        return output

    def finish_events(
        self,
        *,
        rc: int | None,
        stream: JsonlStreamState,
        state: Any,
        resume: ResumeToken | None,
        logger: Any,
        pid: int | None = None,
    ) -> list[RelayEvent]:
        """Terminal events owed once the stream has ended."""
        if stream.did_emit_completed:
            return []
        if rc is not None and rc != 0:
            events = self.process_error_events(
                rc,
                resume=resume,
                found_session=stream.found_session,
                state=state,
                stderr="\n".join(stream.stderr_tail),
            )
            source = "process_error"
        else:
            events = self.stream_end_events(
                resume=resume,
                found_session=stream.found_session,
                state=state,
            )
            source = "stream_end"
        for evt in events:
            if isinstance(evt, CompletedEvent):
                stream.did_emit_completed = True
                self._log_completed_event(
                    logger=logger, pid=pid, event=evt, source=source
                )
        return events

    async def replay(
        self,
        lines: Iterable[bytes],
        *,
        resume: ResumeToken | None = None,
    ) -> AsyncIterator[RelayEvent]:
        """Translate recorded JSONL output as if it came from a clean exit."""
        state = self.new_state("", resume)
        logger = self.get_logger()
        stream = JsonlStreamState(expected_session=resume)
        for raw_line in lines:
            for evt in self.handle_jsonl_line(
                raw_line=raw_line,
                stream=stream,
                state=state,
                resume=resume,
                logger=logger,
            ):
                yield evt
            await anyio.sleep(0)
        for evt in self.finish_events(
            rc=0, stream=stream, state=state, resume=resume, logger=logger
        ):
            yield evt

    async def _send_payload(
        self,
        proc: Any,
        payload: bytes | None,
        *,
        logger: Any,
        resume: ResumeToken | None,
    ) -> None:
        if payload is not None:
            assert proc.stdin is not None
            await proc.stdin.send(payload)
            await proc.stdin.aclose()
            logger.info(
                "subprocess.stdin.send",
                pid=proc.pid,
                resume=resume.value if resume else None,
                bytes=len(payload),
            )
        elif proc.stdin is not None:
            await proc.stdin.aclose()

    async def run_impl(
        self, prompt: str, resume: ResumeToken | None
    ) -> AsyncIterator[RelayEvent]:
        state = self.new_state(prompt, resume)
        tag = self.tag()
        logger = self.get_logger()
        cmd = [self.command(), *self.build_args(prompt, resume, state=state)]
        payload = self.stdin_payload(prompt, resume, state=state)
        logger.info(
            "runner.start",
            engine=self.engine,
            resume=resume.value if resume else None,
            prompt_len=len(prompt),
        )

        async with manage_subprocess(
            cmd,
            stdin=subprocess.PIPE if payload is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=self.env(state=state),
            cwd=self.cwd,
        ) as proc:
            if proc.stdout is None or proc.stderr is None:
                raise RuntimeError(self.pipes_error_message())
            if payload is not None and proc.stdin is None:
                raise RuntimeError(self.pipes_error_message())

            logger.info(
                "subprocess.spawn",
                cmd=cmd[0] if cmd else None,
                args=cmd[1:],
                pid=proc.pid,
            )
            await self._send_payload(proc, payload, logger=logger, resume=resume)

            stream = JsonlStreamState(expected_session=resume)
            rc: int | None = None
            async with anyio.create_task_group() as tg:
                tg.start_soon(drain_stderr, proc.stderr, logger, tag, stream.stderr_tail)
                async for raw_line in iter_bytes_lines(proc.stdout):
                    for evt in self.handle_jsonl_line(
                        raw_line=raw_line,
                        stream=stream,
                        state=state,
                        resume=resume,
                        logger=logger,
                        pid=proc.pid,
                    ):
                        yield evt
                rc = await proc.wait()

            logger.info("subprocess.exit", pid=proc.pid, rc=rc)
            for evt in self.finish_events(
                rc=rc,
                stream=stream,
                state=state,
                resume=resume,
                logger=logger,
                pid=proc.pid,
            ):
                yield evt


class Runner(Protocol):
    engine: EngineId

    def is_resume_line(self, line: str) -> bool: ...

    def format_resume(self, token: ResumeToken) -> str: ...

    def extract_resume(self, text: str | None) -> ResumeToken | None: ...

    def run(
        self,
        prompt: str,
        resume: ResumeToken | None,
    ) -> AsyncIterator[RelayEvent]: ...
