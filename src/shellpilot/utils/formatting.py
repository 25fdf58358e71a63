"""Result formatting for the UI history and the conversation transcript."""

from __future__ import annotations

import logging

from shellpilot.storage.models import ExecutionResult, ToolCallStatus
from shellpilot.utils.text import is_binary

logger = logging.getLogger(__name__)

MAX_OUTPUT_LENGTH = 10000
TRUNCATION_MARKER = "\n... (truncated)"

BINARY_OUTPUT_TEXT = "[Command produced binary output, which is not shown.]"
NO_OUTPUT_TEXT = "(Command produced no output)"
BINARY_DETECTED_TEXT = "[Binary output detected. Halting stream...]"


def format_bytes(num_bytes: int) -> str:
    """Format a byte count the way progress lines show it."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"


def format_duration(ms: int) -> str:
    """Format milliseconds to human-readable duration."""
    if ms < 1000:
        return f"{ms}ms"
    elif ms < 60000:
        return f"{ms / 1000:.1f}s"
    else:
        minutes = ms // 60000
        seconds = (ms % 60000) // 1000
        return f"{minutes}m {seconds}s"


def format_binary_progress(bytes_received: int) -> str:
    if bytes_received > 0:
        return f"[Receiving binary output... {format_bytes(bytes_received)} received]"
    return BINARY_DETECTED_TEXT


def format_background_notice(pid: int | None) -> str:
    return f"Command moved to background (PID: {pid}). Output hidden."


def main_content(result: ExecutionResult, binary: bool | None = None) -> str:
    if binary is None:
        binary = is_binary(result.raw_output)
    if binary:
        return BINARY_OUTPUT_TEXT
    return result.output.strip() or NO_OUTPUT_TEXT


def format_execution_result(
    result: ExecutionResult,
    binary: bool | None = None,
) -> tuple[ToolCallStatus, str]:
    """Map a finished run to its history status and text.

    The checks run in a fixed order (error, abort, background, signal,
    exit code) so a result always lands in exactly one row. ``binary``
    overrides sniffing ``raw_output`` when the caller already knows.
    """
    content = main_content(result, binary)

    if result.error is not None:
        return ToolCallStatus.ERROR, f"{result.error}\n{content}"
    if result.aborted:
        return ToolCallStatus.CANCELLED, f"Command was cancelled.\n{content}"
    if result.backgrounded:
        return ToolCallStatus.SUCCESS, format_background_notice(result.pid)
    if result.signal:
        return ToolCallStatus.ERROR, f"Command terminated by signal: {result.signal}.\n{content}"
    if result.exit_code is not None and result.exit_code != 0:
        return ToolCallStatus.ERROR, f"Command exited with code {result.exit_code}.\n{content}"
    return ToolCallStatus.SUCCESS, content


def stateless_directory_warning(final_dir: str) -> str:
    return f"WARNING: shell mode is stateless; the directory change to '{final_dir}' will not persist."


def prepend_directory_warning(text: str, final_dir: str | None, target_dir: str) -> str:
    if final_dir and final_dir != target_dir:
        return f"{stateless_directory_warning(final_dir)}\n\n{text}"
    return text


def truncate_for_transcript(text: str, max_len: int = MAX_OUTPUT_LENGTH) -> str:
    if len(text) > max_len:
        return text[:max_len] + TRUNCATION_MARKER
    return text


def format_transcript_entry(command: str, result_text: str, max_len: int = MAX_OUTPUT_LENGTH) -> str:
    """Build the user-role message that tells the model what a shell run produced."""
    content = truncate_for_transcript(result_text, max_len)
    return (
        "I ran the following shell command:\n"
        f"```sh\n{command}\n```\n"
        "\n"
        "This produced the following result:\n"
        f"```\n{content}\n```"
    )
