"""Data models for shellpilot."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ToolCallStatus(str, Enum):
    EXECUTING = "Executing"
    SUCCESS = "Success"
    ERROR = "Error"
    CANCELLED = "Cancelled"


@dataclass
class ExecutionResult:
    """Result of one shell process, produced once after exit or handoff.

    Exactly one of ``error``, ``aborted``, ``signal`` or a non-zero
    ``exit_code`` decides the final status. ``backgrounded`` means the
    process was handed over to the background list, not that it ended.
    """

    pid: int | None = None
    backgrounded: bool = False
    output: str = ""
    raw_output: bytes = b""
    exit_code: int | None = None
    signal: str | None = None
    error: BaseException | None = None
    aborted: bool = False
    execution_method: str = "none"


@dataclass
class ToolCallRecord:
    """UI-facing projection of one foreground shell invocation."""

    call_id: str
    command_text: str
    status: ToolCallStatus = ToolCallStatus.EXECUTING
    result_text: str = ""
    pid: int | None = None


@dataclass
class CommandRecord:
    """A stored command history entry."""

    id: int = 0
    command: str = ""
    status: str = ToolCallStatus.SUCCESS.value
    result: str = ""
    exit_code: int | None = None
    pid: int | None = None
    source: str = "foreground"
    execution_time_ms: int = 0
    created_at: str = ""
