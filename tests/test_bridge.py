from functools import partial

import anyio
import pytest

from streamrelay.bridge import Bridge, BridgeConfig, RunOutcome, _format_error
from streamrelay.markdown import PLACEHOLDER
from streamrelay.model import ResumeToken
from streamrelay.presenter import MarkdownPresenter
from streamrelay.sessions import InMemorySessionStore
from tests.factories import (
    action_completed,
    action_started,
    completed,
    session_started,
    text,
)
from tests.fakes import FakeClock, FakeTransport, ScriptRunner

THREAD = "chat-1"


def _cfg(transport: FakeTransport, **kwargs) -> BridgeConfig:
    kwargs.setdefault("session_store", InMemorySessionStore())
    kwargs.setdefault("native_edit", transport.native_edit)
    return BridgeConfig(transport=transport, **kwargs)


async def _handle(
    cfg: BridgeConfig,
    runner: ScriptRunner,
    clock: FakeClock,
    *,
    text_in: str = "hello",
    thread_id: str = THREAD,
) -> RunOutcome:
    async with anyio.create_task_group() as tg:
        bridge = Bridge(cfg, task_group=tg, clock=clock, sleep=clock.sleep)
        outcome = await bridge.handle_message(runner, thread_id=thread_id, text=text_in)
        tg.cancel_scope.cancel()
    return outcome


def _simple_turn() -> list:
    return [
        session_started("opencode", "ses_1"),
        action_started("c1", "command", "ls"),
        action_completed("c1", "command", "ls", ok=True),
        text("Done"),
        completed("Done", resume="ses_1"),
    ]


@pytest.mark.anyio
async def test_turn_without_native_edit_replaces_placeholder(clock: FakeClock) -> None:
    transport = FakeTransport()
    runner = ScriptRunner(_simple_turn())

    outcome = await _handle(_cfg(transport), runner, clock)

    assert outcome.error is None
    assert outcome.completed is not None
    assert outcome.completed.ok is True
    assert transport.contents() == [PLACEHOLDER, "Done\n\n✓ · 0s"]
    assert transport.recalls == [(THREAD, "r1")]
    assert transport.messages(THREAD) == ["Done\n\n✓ · 0s"]
    assert [message.message_id for message in outcome.delivered] == [2]


@pytest.mark.anyio
async def test_turn_with_native_edit_edits_in_place(clock: FakeClock) -> None:
    transport = FakeTransport(native_edit=True)
    runner = ScriptRunner(_simple_turn())

    outcome = await _handle(_cfg(transport), runner, clock)

    assert transport.contents() == [PLACEHOLDER]
    assert [call.content for call in transport.edits] == [
        "▸ · 0s",
        "Done\n\n✓ · 0s",
    ]
    assert transport.recalls == []
    assert transport.messages(THREAD) == ["Done\n\n✓ · 0s"]
    assert outcome.delivered[0].message_id == 1


@pytest.mark.anyio
async def test_native_edit_falls_back_to_emulator(clock: FakeClock) -> None:
    transport = FakeTransport(native_edit=False)
    runner = ScriptRunner(_simple_turn())

    await _handle(_cfg(transport, native_edit=True), runner, clock)

    assert transport.edits == []
    assert transport.messages(THREAD) == ["Done\n\n✓ · 0s"]


@pytest.mark.anyio
async def test_progress_is_throttled_but_never_dropped(clock: FakeClock) -> None:
    transport = FakeTransport(native_edit=True)
    runner = ScriptRunner(
        [
            session_started("opencode", "ses_1"),
            action_started("c1", "command", "ls"),
            action_completed("c1", "command", "ls", ok=True),
            completed("Done", resume="ses_1"),
        ],
        sleep_between=0.5,
        clock=clock,
    )
    outcomes: list[RunOutcome] = []

    async with anyio.create_task_group() as tg:
        bridge = Bridge(_cfg(transport), task_group=tg, clock=clock, sleep=clock.sleep)

        async def turn() -> None:
            outcomes.append(
                await bridge.handle_message(runner, thread_id=THREAD, text="go")
            )

        tg.start_soon(turn)
        await clock.advance(1.0)
        assert [call.content for call in transport.edits] == ["▸ · 0s"]
        await clock.advance(0.25)
        assert [call.content for call in transport.edits] == [
            "▸ · 0s",
            "✓ `ls`\n\n▸ · 1s",
        ]
        await clock.advance(1.0)
        tg.cancel_scope.cancel()

    assert len(outcomes) == 1
    assert [call.content for call in transport.edits] == [
        "▸ · 0s",
        "✓ `ls`\n\n▸ · 1s",
        "Done\n\n✓ · 1s",
    ]


@pytest.mark.anyio
async def test_resume_token_is_saved_and_reused(clock: FakeClock) -> None:
    transport = FakeTransport()
    store = InMemorySessionStore()
    cfg = _cfg(transport, session_store=store)
    token = ResumeToken(engine="opencode", value="ses_1")

    first = await _handle(cfg, ScriptRunner(_simple_turn()), clock)
    second_runner = ScriptRunner(_simple_turn())
    await _handle(cfg, second_runner, clock)

    assert first.resume == token
    assert await store.get(THREAD, "opencode") == token
    assert second_runner.calls == [("hello", token)]


@pytest.mark.anyio
async def test_resume_line_in_message_wins_and_is_stripped(clock: FakeClock) -> None:
    transport = FakeTransport()
    store = InMemorySessionStore()
    await store.set(THREAD, ResumeToken(engine="opencode", value="ses_stored"))
    runner = ScriptRunner(_simple_turn())

    await _handle(
        _cfg(transport, session_store=store),
        runner,
        clock,
        text_in="resume: ses_old\nfix the tests",
    )

    assert runner.calls == [
        ("fix the tests", ResumeToken(engine="opencode", value="ses_old"))
    ]


@pytest.mark.anyio
async def test_turns_for_one_thread_are_serialized(clock: FakeClock) -> None:
    transport = FakeTransport()
    gate = anyio.Event()
    first = ScriptRunner(_simple_turn(), gate=gate)
    second = ScriptRunner(_simple_turn())

    async with anyio.create_task_group() as tg:
        bridge = Bridge(_cfg(transport), task_group=tg, clock=clock, sleep=clock.sleep)
        async with anyio.create_task_group() as turns:
            turns.start_soon(
                partial(bridge.handle_message, first, thread_id=THREAD, text="a")
            )
            await clock.settle()
            turns.start_soon(
                partial(bridge.handle_message, second, thread_id=THREAD, text="b")
            )
            await clock.settle()

            assert transport.contents() == [PLACEHOLDER]
            assert second.calls == []
            assert bridge.threads.waiting(THREAD) == 1
            gate.set()
        tg.cancel_scope.cancel()

    assert transport.contents() == [
        PLACEHOLDER,
        "Done\n\n✓ · 0s",
        PLACEHOLDER,
        "Done\n\n✓ · 0s",
    ]
    assert len(bridge.threads) == 0


@pytest.mark.anyio
async def test_different_threads_run_concurrently(clock: FakeClock) -> None:
    transport = FakeTransport()
    gate = anyio.Event()
    blocked = ScriptRunner(_simple_turn(), gate=gate)
    free = ScriptRunner(_simple_turn())

    async with anyio.create_task_group() as tg:
        bridge = Bridge(_cfg(transport), task_group=tg, clock=clock, sleep=clock.sleep)
        async with anyio.create_task_group() as turns:
            turns.start_soon(
                partial(bridge.handle_message, blocked, thread_id="a", text="x")
            )
            await clock.settle()
            outcome = await bridge.handle_message(free, thread_id="b", text="y")
            assert outcome.completed is not None
            assert transport.messages("b") == ["Done\n\n✓ · 0s"]
            assert transport.messages("a") == [PLACEHOLDER]
            gate.set()
        tg.cancel_scope.cancel()

    assert transport.messages("a") == ["Done\n\n✓ · 0s"]


@pytest.mark.anyio
async def test_missing_completion_is_synthesized(clock: FakeClock) -> None:
    transport = FakeTransport()
    runner = ScriptRunner([session_started("opencode", "ses_1"), text("half")])

    outcome = await _handle(_cfg(transport), runner, clock)

    assert outcome.completed is not None
    assert outcome.completed.ok is False
    assert outcome.completed.resume == ResumeToken(engine="opencode", value="ses_1")
    assert transport.messages(THREAD) == [
        "runner finished without a completed event\n\n✗ · 0s"
    ]


@pytest.mark.anyio
async def test_failed_completion_shows_answer_and_error(clock: FakeClock) -> None:
    transport = FakeTransport()
    runner = ScriptRunner(
        [
            session_started("opencode", "ses_1"),
            completed("partial", ok=False, error="Rate limit exceeded"),
        ]
    )

    await _handle(_cfg(transport), runner, clock)

    assert transport.messages(THREAD) == [
        "partial\n\nRate limit exceeded\n\n✗ · 0s"
    ]


@pytest.mark.anyio
async def test_runner_exception_renders_visible_error(clock: FakeClock) -> None:
    transport = FakeTransport()
    runner = ScriptRunner(_simple_turn(), error=RuntimeError("opencode crashed"))

    outcome = await _handle(_cfg(transport), runner, clock)

    assert outcome.error == "opencode crashed"
    assert transport.messages(THREAD) == ["opencode crashed\n\n✗ · error"]


@pytest.mark.anyio
async def test_placeholder_failure_posts_error_message(clock: FakeClock) -> None:
    transport = FakeTransport()
    transport.post_errors = [RuntimeError("network down")]
    runner = ScriptRunner(_simple_turn())

    outcome = await _handle(_cfg(transport), runner, clock)

    assert outcome.error == "network down"
    assert runner.calls == []
    assert transport.messages(THREAD) == ["network down\n\n✗ · error"]


@pytest.mark.anyio
async def test_long_answer_is_split_across_messages(clock: FakeClock) -> None:
    transport = FakeTransport()
    presenter = MarkdownPresenter(max_body_chars=10)
    runner = ScriptRunner(
        [session_started("opencode", "ses_1"), completed("aaaa\n\nbbbb\n\ncccc")]
    )

    outcome = await _handle(_cfg(transport, presenter=presenter), runner, clock)

    assert transport.messages(THREAD) == [
        "aaaa\n\n✓ · 0s",
        "continued (2/2)\n\nbbbb\n\ncccc\n\n✓ · 0s",
    ]
    assert len(outcome.delivered) == 2


@pytest.mark.anyio
async def test_events_after_completion_are_ignored(clock: FakeClock) -> None:
    transport = FakeTransport()
    runner = ScriptRunner(
        [
            session_started("opencode", "ses_1"),
            completed("Done"),
            text("late"),
        ]
    )

    await _handle(_cfg(transport), runner, clock)

    assert transport.messages(THREAD) == ["Done\n\n✓ · 0s"]


@pytest.mark.anyio
async def test_format_error_flattens_groups() -> None:
    group = ExceptionGroup(
        "outer",
        [RuntimeError("first"), ExceptionGroup("inner", [ValueError("second")])],
    )
    assert _format_error(group) == "first\nsecond"
    assert _format_error(RuntimeError()) == "RuntimeError"
