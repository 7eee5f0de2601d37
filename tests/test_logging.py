import pytest
import structlog
from structlog.contextvars import get_contextvars
from structlog.testing import capture_logs

from streamrelay.logging import (
    PIPELINE_TRACE_ENV,
    bind_run_context,
    clear_context,
    get_logger,
    log_pipeline,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    clear_context()
    structlog.reset_defaults()


@pytest.mark.parametrize(
    ("env_value", "level"),
    [(None, "debug"), ("1", "info"), ("off", "debug")],
)
def test_log_pipeline_level_follows_trace_env(
    monkeypatch: pytest.MonkeyPatch, env_value: str | None, level: str
) -> None:
    if env_value is None:
        monkeypatch.delenv(PIPELINE_TRACE_ENV, raising=False)
    else:
        monkeypatch.setenv(PIPELINE_TRACE_ENV, env_value)

    with capture_logs() as logs:
        log_pipeline(get_logger("test"), "runner.line", n=1)

    assert logs == [{"event": "runner.line", "n": 1, "log_level": level}]


def test_run_context_is_bound_and_cleared() -> None:
    bind_run_context(thread_id="t1", engine="opencode")
    assert get_contextvars() == {"thread_id": "t1", "engine": "opencode"}

    clear_context()
    assert get_contextvars() == {}


def test_setup_logging_writes_json_when_not_a_tty(
    capsys: pytest.CaptureFixture[str],
) -> None:
    setup_logging(debug=False, cache_logger_on_first_use=False)
    logger = get_logger("test")

    logger.debug("hidden")
    bind_run_context(thread_id="t1")
    logger.info("edit.recall_failed", error="gone")

    err = capsys.readouterr().err
    assert "hidden" not in err
    assert '"event": "edit.recall_failed"' in err
    assert '"thread_id": "t1"' in err
    assert '"level": "info"' in err
