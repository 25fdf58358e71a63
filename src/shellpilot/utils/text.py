"""Byte and text helpers for process output."""

from __future__ import annotations

from collections import deque

from rich.text import Text

BINARY_SAMPLE_SIZE = 512


def is_binary(data: bytes | None, sample_size: int = BINARY_SAMPLE_SIZE) -> bool:
    """Heuristic: a NUL byte near the start of the stream means binary."""
    if not data:
        return False
    return b"\x00" in data[:sample_size]


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences, keeping the plain text."""
    if "\x1b" not in text:
        return text
    return Text.from_ansi(text).plain


class OutputBuffer:
    """Accumulates text chunks, keeping at most the last ``max_size`` characters.

    Appends cost the size of the chunk, not the size of the buffer; the
    text is only joined when read.
    """

    def __init__(self, max_size: int | None = None) -> None:
        self.max_size = max_size
        self.truncated = False
        self._chunks: deque[str] = deque()
        self._length = 0

    def __len__(self) -> int:
        return self._length

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        self._chunks.append(chunk)
        self._length += len(chunk)
        if self.max_size is not None and self._length > self.max_size:
            self._drop_front(self._length - self.max_size)
            self.truncated = True

    def _drop_front(self, count: int) -> None:
        while count > 0:
            head = self._chunks[0]
            if len(head) <= count:
                self._chunks.popleft()
                self._length -= len(head)
                count -= len(head)
            else:
                self._chunks[0] = head[count:]
                self._length -= count
                count = 0

    @property
    def text(self) -> str:
        return "".join(self._chunks)
