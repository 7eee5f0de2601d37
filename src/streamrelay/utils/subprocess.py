from __future__ import annotations

import os
import signal
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any

import anyio
from anyio.abc import Process

from ..logging import get_logger

logger = get_logger(__name__)

TERMINATE_TIMEOUT_S = 2.0


async def wait_for_process(proc: Process, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds; return True when the wait timed out."""
    with anyio.move_on_after(timeout) as scope:
        await proc.wait()
    return scope.cancel_called


def _signal_process(
    proc: Process,
    sig: signal.Signals,
    fallback: Callable[[], None],
) -> None:
    if proc.returncode is not None:
        return
    if os.name == "posix" and proc.pid is not None:
        try:
            os.killpg(proc.pid, sig)
            return
        except ProcessLookupError:
            return
        except OSError as exc:
            logger.debug(
                "subprocess.signal.failed",
                signal=sig.name,
                error=str(exc),
                error_type=exc.__class__.__name__,
                pid=proc.pid,
            )
    try:
        fallback()
    except ProcessLookupError:
        return


def terminate_process(proc: Process) -> None:
    _signal_process(proc, signal.SIGTERM, proc.terminate)


def kill_process(proc: Process) -> None:
    _signal_process(proc, signal.SIGKILL, proc.kill)


@asynccontextmanager
async def manage_subprocess(
    cmd: Sequence[str],
    *,
    terminate_timeout: float = TERMINATE_TIMEOUT_S,
    **kwargs: Any,
) -> AsyncIterator[Process]:
    """Run ``cmd`` in its own session; SIGTERM on exit, SIGKILL after a timeout."""
    if os.name == "posix":
        kwargs.setdefault("start_new_session", True)
    proc = await anyio.open_process(cmd, **kwargs)
    try:
        yield proc
    finally:
        if proc.returncode is None:
            with anyio.CancelScope(shield=True):
                terminate_process(proc)
                timed_out = await wait_for_process(proc, timeout=terminate_timeout)
                if timed_out:
                    kill_process(proc)
                    await proc.wait()
