from __future__ import annotations

from collections import deque
from collections.abc import AsyncIterator
from typing import Any

import anyio
from anyio.abc import ByteReceiveStream


async def iter_bytes_lines(stream: ByteReceiveStream) -> AsyncIterator[bytes]:
    """Yield newline-terminated lines; a trailing partial line is yielded last."""
    buffer = bytearray()
    async for chunk in stream:
        buffer.extend(chunk)
        while True:
            idx = buffer.find(b"\n")
            if idx < 0:
                break
            line = bytes(buffer[: idx + 1])
            del buffer[: idx + 1]
            yield line
    if buffer:
        yield bytes(buffer)


async def drain_stderr(
    stream: ByteReceiveStream,
    logger: Any,
    tag: str,
    tail: deque[str] | None = None,
) -> None:
    try:
        async for raw_line in iter_bytes_lines(stream):
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            logger.debug("subprocess.stderr", tag=tag, line=line)
            if tail is not None:
                tail.append(line)
    except (anyio.ClosedResourceError, anyio.BrokenResourceError):
        return
