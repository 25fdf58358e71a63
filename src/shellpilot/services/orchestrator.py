"""Shell command orchestration: foreground runs, backgrounding and reporting."""

from __future__ import annotations

import asyncio
import logging
import secrets
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from shellpilot.config import AppConfig, get_config
from shellpilot.services.cancellation import CancellationToken
from shellpilot.services.execution import (
    BinaryDetectedEvent,
    BinaryProgressEvent,
    DataEvent,
    OutputEvent,
    ShellExecutionConfig,
    ShellExecutionService,
)
from shellpilot.services.history import (
    ConversationLog,
    HistoryItem,
    HistoryItemType,
    HistoryManager,
    now_ms,
)
from shellpilot.services.shell_state import (
    SetActivePid,
    SetOutputTime,
    SetVisibility,
    ShellState,
    ShellStatus,
    ShellStore,
    SyncBackgroundShells,
    ToggleVisibility,
    UpdateShell,
)
from shellpilot.storage import database
from shellpilot.storage.models import ExecutionResult, ToolCallRecord, ToolCallStatus
from shellpilot.utils.formatting import (
    BINARY_DETECTED_TEXT,
    format_binary_progress,
    format_execution_result,
    format_transcript_entry,
    prepend_directory_warning,
)
from shellpilot.utils.system import is_windows
from shellpilot.utils.text import OutputBuffer, strip_ansi

logger = logging.getLogger(__name__)

NO_BACKGROUND_SHELLS_TEXT = "No background shells are currently active."


@dataclass
class _BackgroundRun:
    command: str
    started: float
    pwd_file: Path | None
    binary: bool = False


@dataclass
class _ShellSession:
    auto_hidden: bool = False
    restore_handle: asyncio.TimerHandle | None = None
    active_tool_pid: int | None = None
    waiting_for_confirmation: bool = False
    background_runs: dict[int, _BackgroundRun] = field(default_factory=dict)
    reported: set[int] = field(default_factory=set)
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    disposed: bool = False


def _wrap_with_pwd_capture(command: str, pwd_file: Path) -> str:
    command = command.strip()
    if not command.endswith((";", "&")):
        command += ";"
    return f'{{ {command} }}; __code=$?; pwd > "{pwd_file}"; exit $__code'


def _read_final_dir(pwd_file: Path | None) -> str | None:
    if pwd_file is None:
        return None
    try:
        final_dir = pwd_file.read_text().strip()
    except OSError:
        return None
    if not final_dir:
        return None
    return str(Path(final_dir).resolve())


def _remove_pwd_file(pwd_file: Path | None) -> None:
    if pwd_file is None:
        return
    try:
        pwd_file.unlink(missing_ok=True)
    except OSError as e:
        logger.debug("Could not remove %s: %s", pwd_file, e)


class ShellCommandProcessor:
    """Turn user shell commands into runs, history items and transcript entries."""

    def __init__(
        self,
        history: HistoryManager,
        transcript: ConversationLog,
        service: ShellExecutionService | None = None,
        config: AppConfig | None = None,
        on_exec: Callable[[asyncio.Task[Any]], None] | None = None,
        on_focus: Callable[[], None] | None = None,
    ) -> None:
        self.history = history
        self.transcript = transcript
        self.service = service or ShellExecutionService()
        self.config = config or get_config()
        self._on_exec = on_exec
        self._on_focus = on_focus
        self.store = ShellStore(self.service, on_shell_exit=self._on_background_exit)
        self._session = _ShellSession()

    @property
    def state(self) -> ShellState:
        return self.store.state

    @property
    def background_shell_count(self) -> int:
        return self.store.running_count

    # --- Foreground runs ---

    def handle_shell_command(self, raw_command: str, abort_token: CancellationToken) -> bool:
        """Schedule ``raw_command`` on the running loop; False for blank input."""
        if not raw_command.strip():
            return False

        task = self._spawn(self.run_command(raw_command, abort_token))
        if self._on_exec is not None:
            self._on_exec(task)
        return True

    async def wait_idle(self) -> None:
        """Wait for every scheduled run and report to finish."""
        while self._session.tasks:
            await asyncio.gather(*list(self._session.tasks), return_exceptions=True)

    async def run_command(
        self,
        raw_command: str,
        abort_token: CancellationToken,
    ) -> ToolCallRecord | None:
        """Run one command in the foreground and report it.

        Returns the final record (for a backgrounded run, the hand-off
        notice) or None when the run failed unexpectedly.
        """
        timestamp = now_ms()
        call_id = f"shell-{timestamp}"
        self.history.add_item(HistoryItemType.USER_SHELL, text=raw_command, timestamp=timestamp)

        target_dir = self.config.get_target_dir()
        pwd_file: Path | None = None
        command_to_execute = raw_command
        if not is_windows():
            pwd_file = Path(tempfile.gettempdir()) / f"shell_pwd_{secrets.token_hex(6)}.tmp"
            command_to_execute = _wrap_with_pwd_capture(raw_command, pwd_file)

        self.history.set_pending(
            HistoryItem(
                type=HistoryItemType.TOOL_GROUP,
                timestamp=timestamp,
                tools=[ToolCallRecord(call_id=call_id, command_text=raw_command)],
            )
        )

        output = OutputBuffer()
        binary_bytes: int | None = None
        pid: int | None = None
        backgrounded = False

        def on_event(event: OutputEvent) -> None:
            nonlocal binary_bytes
            if isinstance(event, DataEvent):
                output.append(event.chunk)
                self.store.dispatch(SetOutputTime(time.time()))
                self.history.append_pending_output(event.chunk)
                return
            if isinstance(event, BinaryDetectedEvent):
                binary_bytes = 0
                display = BINARY_DETECTED_TEXT
            elif isinstance(event, BinaryProgressEvent):
                binary_bytes = event.bytes_received
                display = format_binary_progress(event.bytes_received)
            else:
                return
            self.store.dispatch(SetOutputTime(time.time()))
            self.history.update_pending_tool(result_text=display)

        start = time.monotonic()
        try:
            handle = await self.service.execute(
                command_to_execute,
                target_dir,
                on_event,
                abort_token,
                interactive=self.config.shell.interactive,
                exec_config=ShellExecutionConfig.from_shell_config(self.config.shell),
            )

            pid = handle.pid
            if pid is not None:
                self.store.dispatch(SetActivePid(pid))
                self.history.update_pending_tool(pid=pid)
                self._update_visibility()

            result = await handle.result
            elapsed_ms = int((time.monotonic() - start) * 1000)
            self.history.set_pending(None)

            if result.backgrounded and result.pid is not None:
                backgrounded = True
                self._session.background_runs[result.pid] = _BackgroundRun(
                    raw_command, start, pwd_file, binary=binary_bytes is not None
                )
                self.store.register_shell(result.pid, raw_command, output.text)
                if binary_bytes is not None:
                    self.store.dispatch(
                        UpdateShell(result.pid, {"is_binary": True, "binary_bytes_received": binary_bytes})
                    )
                status, text = format_execution_result(result)
                logger.info("Shell command moved to background (pid=%d): %s", result.pid, raw_command)
                return ToolCallRecord(call_id, raw_command, status, text, result.pid)

            status, text = format_execution_result(result)
            text = prepend_directory_warning(text, _read_final_dir(pwd_file), target_dir)
            record = ToolCallRecord(call_id, raw_command, status, text, result.pid)

            if status != ToolCallStatus.CANCELLED:
                self.history.add_item(HistoryItemType.TOOL_GROUP, timestamp=timestamp, tools=[record])
            self.transcript.add_history(format_transcript_entry(raw_command, text, self.config.shell.max_output))
            await self._persist(record, result.exit_code, elapsed_ms, "foreground")

            logger.info("Shell command finished (%s, %dms): %s", status.value, elapsed_ms, raw_command)
            return record
        except Exception as e:
            logger.exception("Shell command failed: %s", raw_command)
            self.history.set_pending(None)
            self.history.add_item(HistoryItemType.ERROR, text=f"An unexpected error occurred: {e}")
            return None
        finally:
            if not backgrounded:
                _remove_pwd_file(pwd_file)
            if self.store.state.active_shell_pid == pid:
                self.store.dispatch(SetActivePid(None))
            self._update_visibility()
            if self._on_focus is not None:
                self._on_focus()

    # --- Background shells ---

    def background_current_shell(self) -> bool:
        """Hand the running foreground command over to the background list."""
        pid = self.store.state.active_shell_pid
        if pid is None:
            return False
        self._cancel_restore()
        self._session.auto_hidden = False
        self.service.background(pid)
        return True

    def dismiss_background_shell(self, pid: int) -> bool:
        shell = self.store.get(pid)
        if shell is None:
            return False

        if shell.status == ShellStatus.RUNNING:
            self._report_background(pid, ExecutionResult(pid=pid, output=self._shell_text(pid), aborted=True))

        dismissed = self.store.dismiss_shell(pid)
        run = self._session.background_runs.pop(pid, None)
        if run is not None:
            _remove_pwd_file(run.pwd_file)
        return dismissed

    def toggle_background_shell(self) -> None:
        self._cancel_restore()
        self._session.auto_hidden = False

        if not self.store.state.background_shells:
            self.store.dispatch(SetVisibility(False))
            self.history.add_item(HistoryItemType.INFO, text=NO_BACKGROUND_SHELLS_TEXT)
            return

        self.store.dispatch(ToggleVisibility())
        if self.store.state.is_background_shell_visible:
            self.store.dispatch(SyncBackgroundShells())

    def _shell_text(self, pid: int) -> str:
        shell = self.store.get(pid)
        if shell is None or not isinstance(shell.output, str):
            return ""
        return strip_ansi(shell.output).strip()

    def _on_background_exit(self, pid: int, exit_code: int | None, signal: str | None) -> None:
        if self._session.disposed:
            return
        result = ExecutionResult(pid=pid, output=self._shell_text(pid), exit_code=exit_code, signal=signal)
        self._report_background(pid, result)

    def _report_background(self, pid: int, result: ExecutionResult) -> None:
        if pid in self._session.reported:
            return
        self._session.reported.add(pid)

        shell = self.store.get(pid)
        run = self._session.background_runs.get(pid)
        command = run.command if run is not None else (shell.command if shell is not None else "")

        binary = (shell is not None and shell.is_binary) or (run is not None and run.binary)
        status, text = format_execution_result(result, binary=binary)
        if not result.aborted and run is not None:
            text = prepend_directory_warning(text, _read_final_dir(run.pwd_file), self.config.get_target_dir())
            _remove_pwd_file(run.pwd_file)

        record = ToolCallRecord(f"shell-bg-{pid}", command, status, text, pid)
        if status != ToolCallStatus.CANCELLED:
            self.history.add_item(HistoryItemType.TOOL_GROUP, tools=[record])
        self.transcript.add_history(format_transcript_entry(command, text, self.config.shell.max_output))

        elapsed_ms = int((time.monotonic() - run.started) * 1000) if run is not None else 0
        self._spawn(self._persist(record, result.exit_code, elapsed_ms, "background"))
        logger.info("Background shell %d finished (%s): %s", pid, status.value, command)

    # --- Visibility ---

    def set_foreground_state(self, active_tool_pid: int | None, waiting_for_confirmation: bool) -> None:
        self._session.active_tool_pid = active_tool_pid
        self._session.waiting_for_confirmation = waiting_for_confirmation
        self._update_visibility()

    def _foreground_active(self) -> bool:
        return (
            self.store.state.active_shell_pid is not None
            or self._session.active_tool_pid is not None
            or self._session.waiting_for_confirmation
        )

    def _update_visibility(self) -> None:
        session = self._session
        if session.disposed:
            return

        if self._foreground_active():
            self._cancel_restore()
            if self.store.state.is_background_shell_visible:
                session.auto_hidden = True
                self.store.dispatch(SetVisibility(False))
            return

        if session.auto_hidden and session.restore_handle is None:
            delay = self.config.shell.restore_visibility_delay_ms / 1000
            session.restore_handle = asyncio.get_running_loop().call_later(delay, self._restore_visibility)

    def _restore_visibility(self) -> None:
        session = self._session
        session.restore_handle = None
        if not session.auto_hidden or self._foreground_active():
            return
        session.auto_hidden = False
        if self.store.state.background_shells:
            self.store.dispatch(SetVisibility(True))
            self.store.dispatch(SyncBackgroundShells())

    def _cancel_restore(self) -> None:
        if self._session.restore_handle is not None:
            self._session.restore_handle.cancel()
            self._session.restore_handle = None

    # --- Plumbing ---

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._session.tasks.add(task)
        task.add_done_callback(self._session.tasks.discard)
        return task

    async def _persist(
        self,
        record: ToolCallRecord,
        exit_code: int | None,
        elapsed_ms: int,
        source: str,
    ) -> None:
        if not database.is_initialized():
            return
        await database.save_command(
            command=record.command_text,
            status=record.status.value,
            result=record.result_text,
            exit_code=exit_code,
            pid=record.pid,
            execution_time_ms=elapsed_ms,
            source=source,
        )

    def dispose(self) -> None:
        """Cancel timers, release background subscriptions and close the driver."""
        session = self._session
        if session.disposed:
            return
        session.disposed = True
        self._cancel_restore()
        self.store.close()
        self.service.close()
        session.background_runs.clear()
        session.auto_hidden = False
