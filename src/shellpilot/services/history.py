"""UI history items and the conversation transcript."""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from shellpilot.storage.models import ToolCallRecord
from shellpilot.utils.text import OutputBuffer

logger = logging.getLogger(__name__)


class HistoryItemType(str, Enum):
    USER_SHELL = "user_shell"
    TOOL_GROUP = "tool_group"
    INFO = "info"
    ERROR = "error"


@dataclass
class HistoryItem:
    type: HistoryItemType
    timestamp: int
    text: str = ""
    tools: list[ToolCallRecord] = field(default_factory=list)


HistoryListener = Callable[[str, Any], None]


def now_ms() -> int:
    return int(time.time() * 1000)


class HistoryManager:
    """Ordered list of rendered history items plus one in-flight pending item.

    Listeners receive ``("added", item)`` for new items,
    ``("pending", item_or_none)`` whenever the pending item changes and
    ``("output", chunk)`` for text streamed onto the pending item.
    """

    def __init__(self) -> None:
        self.items: list[HistoryItem] = []
        self._pending: HistoryItem | None = None
        self._pending_output: OutputBuffer | None = None
        self._synced_length = 0
        self._listeners: list[HistoryListener] = []

    @property
    def pending_item(self) -> HistoryItem | None:
        self._sync_pending_output()
        return self._pending

    def add_listener(self, listener: HistoryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def add_item(
        self,
        item_type: HistoryItemType,
        text: str = "",
        timestamp: int | None = None,
        tools: list[ToolCallRecord] | None = None,
    ) -> HistoryItem:
        item = HistoryItem(
            type=item_type,
            timestamp=timestamp if timestamp is not None else now_ms(),
            text=text,
            tools=list(tools or []),
        )
        self.items.append(item)
        self._notify("added", item)
        return item

    def set_pending(self, item: HistoryItem | None) -> None:
        self._pending = item
        self._pending_output = None
        self._notify("pending", item)

    def append_pending_output(self, chunk: str) -> None:
        """Extend the pending tool's result text with streamed output.

        The joined text is only built when the pending item is read, so a
        long stream costs one copy per read rather than one per chunk.
        """
        if self._pending is None or not self._pending.tools or not chunk:
            return
        if self._pending_output is None:
            self._pending_output = OutputBuffer()
            self._pending_output.append(self._pending.tools[0].result_text)
            self._synced_length = len(self._pending_output)
        self._pending_output.append(chunk)
        self._notify("output", chunk)

    def update_pending_tool(self, **changes: Any) -> None:
        """Replace fields of the pending item's first tool record."""
        if self._pending is None or not self._pending.tools:
            return
        if "result_text" in changes:
            self._pending_output = None
        else:
            self._sync_pending_output()
        self._replace_pending_tool(**changes)
        self._notify("pending", self._pending)

    def _sync_pending_output(self) -> None:
        output = self._pending_output
        if output is None or len(output) == self._synced_length:
            return
        self._synced_length = len(output)
        self._replace_pending_tool(result_text=output.text)

    def _replace_pending_tool(self, **changes: Any) -> None:
        tool = dataclasses.replace(self._pending.tools[0], **changes)
        self._pending = dataclasses.replace(self._pending, tools=[tool, *self._pending.tools[1:]])

    def _notify(self, kind: str, payload: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, payload)
            except Exception:
                logger.exception("History listener failed")


class ConversationLog(Protocol):
    def add_history(self, text: str) -> None: ...


class TranscriptLog:
    """In-memory conversation log of user-role shell reports."""

    def __init__(self) -> None:
        self.entries: list[str] = []

    def add_history(self, text: str) -> None:
        self.entries.append(text)

    def clear(self) -> None:
        self.entries.clear()
