"""Splitting long markdown bodies into chat-sized messages."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .markdown import HEADER_SEP, MarkdownParts, assemble_markdown_parts

MAX_BODY_CHARS = 3500

_PARAGRAPH_SPLIT_RE = re.compile(r"(\n{2,})")
_FENCE_RE = re.compile(r"^(?P<indent>[ \t]*)(?P<fence>[`~]{3,})(?P<info>.*)$")


@dataclass(frozen=True, slots=True)
class _OpenFence:
    fence: str
    indent: str
    header: str

    def closing_line(self) -> str:
        return f"{self.indent}{self.fence}\n"

    def reopen_prefix(self) -> str:
        return f"{self.header}\n"


def _hard_wrap(line: str, max_chars: int) -> list[str]:
    if len(line) <= max_chars:
        return [line]
    content = line.rstrip("\r\n")
    ending = line[len(content) :]
    pieces = [
        content[idx : idx + max_chars] for idx in range(0, len(content), max_chars)
    ]
    if pieces:
        pieces[-1] += ending
    elif ending:
        pieces.append(ending)
    return pieces


def _split_paragraph(block: str, max_chars: int) -> list[str]:
    if len(block) <= max_chars:
        return [block]
    pieces: list[str] = []
    current = ""
    for line in block.splitlines(keepends=True):
        for part in _hard_wrap(line, max_chars):
            if current and len(current) + len(part) > max_chars:
                pieces.append(current)
                current = ""
            current += part
            if len(current) >= max_chars:
                pieces.append(current)
                current = ""
    if current:
        pieces.append(current)
    return pieces


def _advance_fence(line: str, fence: _OpenFence | None) -> _OpenFence | None:
    match = _FENCE_RE.match(line)
    if match is None:
        return fence
    marker = match.group("fence")
    if fence is None:
        return _OpenFence(fence=marker, indent=match.group("indent"), header=line)
    if marker[0] == fence.fence[0] and len(marker) >= len(fence.fence):
        return None
    return fence


def _scan_fences(text: str, fence: _OpenFence | None) -> _OpenFence | None:
    for line in text.splitlines():
        fence = _advance_fence(line, fence)
    return fence


def _paragraph_blocks(body: str) -> list[str]:
    segments = _PARAGRAPH_SPLIT_RE.split(body)
    blocks: list[str] = []
    for idx in range(0, len(segments), 2):
        separator = segments[idx + 1] if idx + 1 < len(segments) else ""
        block = segments[idx] + separator
        if block:
            blocks.append(block)
    return blocks


def split_markdown_body(body: str | None, max_chars: int) -> list[str]:
    """Split ``body`` into chunks of at most ``max_chars``.

    Paragraph breaks are preferred split points, then line breaks, then a
    hard wrap. A fenced code block cut by a split is closed at the end of
    its chunk and reopened with the same header line in the next one, so a
    chunk may run over ``max_chars`` by that header plus the closing fence.
    """
    if not body or not body.strip():
        return []
    max_chars = max(1, int(max_chars))
    trimmed = body.strip()
    if len(trimmed) <= max_chars:
        return [trimmed]

    chunks: list[str] = []
    current = ""
    reopened = ""
    fence: _OpenFence | None = None
    for block in _paragraph_blocks(body):
        for piece in _split_paragraph(block, max_chars):
            if current != reopened and len(current) + len(piece) > max_chars:
                if not piece.strip():
                    continue
                if fence is not None:
                    if not current.endswith(("\n", "\r")):
                        current += "\n"
                    current += fence.closing_line()
                chunks.append(current)
                reopened = fence.reopen_prefix() if fence is not None else ""
                current = reopened
            current += piece
            fence = _scan_fences(piece, fence)
    if current:
        chunks.append(current)
    return [chunk.strip("\n") for chunk in chunks if chunk.strip()]


def trim_body(body: str | None, *, max_chars: int = MAX_BODY_CHARS) -> str | None:
    if not body:
        return None
    if len(body) > max_chars:
        body = body[: max_chars - 1] + "…"
    return body if body.strip() else None


def continued_header(header: str | None, index: int, total: int) -> str:
    marker = f"continued ({index}/{total})"
    if header:
        return f"{header}{HEADER_SEP}{marker}"
    return marker


def prepare_multi_message(
    parts: MarkdownParts, *, max_body_chars: int = MAX_BODY_CHARS
) -> list[str]:
    body = parts.body
    if body is not None and not body.strip():
        body = None
    chunks = split_markdown_body(body, max_body_chars)
    if not chunks:
        chunks = [""]
    total = len(chunks)

    messages: list[str] = []
    for idx, chunk in enumerate(chunks, start=1):
        header = parts.header
        if idx > 1:
            header = continued_header(header, idx, total)
        messages.append(
            assemble_markdown_parts(
                MarkdownParts(header=header, body=chunk, footer=parts.footer)
            )
        )
    return messages
