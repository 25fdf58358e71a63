"""Shell process execution service.

Runs one command string per call through the platform shell and streams
its output as typed events. A running process can be handed over to the
background: its pending result resolves immediately with
``backgrounded=True`` and later events queue on the process channel until
a new consumer subscribes.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal as signal_module
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from shellpilot.config import SanitizationConfig, ShellConfig
from shellpilot.services.cancellation import CancellationToken
from shellpilot.services.environment import sanitize_environment
from shellpilot.storage.models import ExecutionResult
from shellpilot.utils.system import ensure_promptvars_disabled, get_shell_configuration, is_windows
from shellpilot.utils.text import OutputBuffer, is_binary, strip_ansi

if sys.platform != "win32":
    import ptyprocess

logger = logging.getLogger(__name__)

MAX_CHILD_PROCESS_BUFFER_SIZE = 16 * 1024 * 1024
MAX_SNIFF_SIZE = 4096
SNIFF_CHUNK_COUNT = 20
READ_CHUNK_SIZE = 4096
SIGKILL_TIMEOUT_S = 0.2
PIPE_DRAIN_TIMEOUT_S = 0.25
EXITED_RETENTION_S = 5 * 60

IDENTIFICATION_ENV_VAR = "SHELLPILOT"
IDENTIFICATION_ENV_VAR_VALUE = "1"


@dataclass(frozen=True)
class DataEvent:
    chunk: str


@dataclass(frozen=True)
class BinaryDetectedEvent:
    pass


@dataclass(frozen=True)
class BinaryProgressEvent:
    bytes_received: int


@dataclass(frozen=True)
class ExitEvent:
    exit_code: int | None
    signal: str | None


OutputEvent = Union[DataEvent, BinaryDetectedEvent, BinaryProgressEvent, ExitEvent]
EventCallback = Callable[[OutputEvent], None]
ExitCallback = Callable[[Union[int, None], Union[str, None]], None]


@dataclass
class ShellExecutionConfig:
    terminal_width: int | None = None
    terminal_height: int | None = None
    pager: str = "cat"
    show_color: bool = False
    default_fg: str | None = None
    default_bg: str | None = None
    sanitization: SanitizationConfig = field(default_factory=SanitizationConfig)

    @classmethod
    def from_shell_config(cls, shell: ShellConfig, **overrides: Any) -> ShellExecutionConfig:
        values: dict[str, Any] = {
            "terminal_width": shell.terminal_width,
            "terminal_height": shell.terminal_height,
            "pager": shell.pager,
            "show_color": shell.show_color,
            "sanitization": shell.sanitization,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class ExecutionHandle:
    pid: int | None
    result: asyncio.Future[ExecutionResult]


class OutputChannel:
    """Ordered event stream for one process with a single consumer.

    Events sent while no consumer is attached are queued and flushed, in
    order, to the next consumer that attaches.
    """

    def __init__(self, consumer: EventCallback | None = None) -> None:
        self._consumer = consumer
        self._pending: deque[OutputEvent] = deque()
        self.closed = False

    @property
    def consumer(self) -> EventCallback | None:
        return self._consumer

    def send(self, event: OutputEvent) -> None:
        if self.closed:
            return
        if isinstance(event, ExitEvent):
            self.closed = True
        if self._consumer is None:
            self._pending.append(event)
            return
        self._consumer(event)

    def attach(self, consumer: EventCallback) -> None:
        if self._consumer is not None and self._consumer is not consumer:
            logger.debug("Replacing output channel consumer")
        self._consumer = None
        while self._pending:
            consumer(self._pending.popleft())
        self._consumer = consumer

    def detach(self, consumer: EventCallback | None = None) -> None:
        if consumer is None or self._consumer is consumer:
            self._consumer = None


@dataclass
class _ActiveProcess:
    pid: int
    method: str
    channel: OutputChannel
    result: asyncio.Future[ExecutionResult]
    abort_token: CancellationToken
    process: Any = None
    output: OutputBuffer = field(default_factory=lambda: OutputBuffer(MAX_CHILD_PROCESS_BUFFER_SIZE))
    chunks: list[bytes] = field(default_factory=list)
    bytes_received: int = 0
    sniffed_bytes: int = 0
    streaming_text: bool = True
    decoders: dict[str, codecs.IncrementalDecoder] = field(default_factory=dict)
    exit_callbacks: list[ExitCallback] = field(default_factory=list)
    error: BaseException | None = None
    kill_requested: bool = False
    exited: bool = False


@dataclass
class _ExitedProcess:
    exit_code: int | None
    signal: str | None
    channel: OutputChannel


class _PipeProtocol(asyncio.SubprocessProtocol):
    """Forward pipe output to a sink and report the shell's own exit.

    The exit is reported as soon as the shell process ends, even when a
    job it started still holds the pipes open. Output received before a
    sink is attached is held back; output after ``detach`` is dropped.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.transport: asyncio.SubprocessTransport | None = None
        self.exited: asyncio.Future[None] = loop.create_future()
        self.pipes_closed: asyncio.Future[None] = loop.create_future()
        self.error: BaseException | None = None
        self._open_fds = {1, 2}
        self._backlog: list[tuple[bytes, str]] = []
        self._sink: Callable[[bytes, str], None] | None = None
        self._detached = False

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def attach(self, sink: Callable[[bytes, str], None]) -> None:
        backlog, self._backlog = self._backlog, []
        for data, stream in backlog:
            sink(data, stream)
        self._sink = sink

    def detach(self) -> None:
        self._detached = True
        self._sink = None
        self._backlog = []

    def pipe_data_received(self, fd: int, data: bytes) -> None:
        stream = "stderr" if fd == 2 else "stdout"
        if self._sink is not None:
            self._sink(data, stream)
        elif not self._detached:
            self._backlog.append((data, stream))

    def pipe_connection_lost(self, fd: int, exc: Exception | None) -> None:
        if exc is not None and self.error is None:
            self.error = exc
        self._open_fds.discard(fd)
        if not self._open_fds and not self.pipes_closed.done():
            self.pipes_closed.set_result(None)

    def process_exited(self) -> None:
        if not self.exited.done():
            self.exited.set_result(None)


def _signal_name(signum: int | None) -> str | None:
    if not signum:
        return None
    try:
        return signal_module.Signals(signum).name
    except ValueError:
        return str(signum)


class ShellExecutionService:
    """Spawn shell commands and manage their live output streams."""

    def __init__(self) -> None:
        self._active: dict[int, _ActiveProcess] = {}
        self._exited: dict[int, _ExitedProcess] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._retention: dict[int, asyncio.TimerHandle] = {}
        self._lingering: set[asyncio.BaseTransport] = set()

    async def execute(
        self,
        command: str,
        cwd: str,
        on_event: EventCallback,
        abort_token: CancellationToken,
        interactive: bool = False,
        exec_config: ShellExecutionConfig | None = None,
    ) -> ExecutionHandle:
        """Start ``command`` in ``cwd`` and return its pid and pending result.

        Spawn failures never raise: the returned handle has no pid and an
        already-resolved result carrying the error.
        """
        exec_config = exec_config or ShellExecutionConfig()

        if interactive and not is_windows():
            try:
                return self._execute_with_pty(command, cwd, on_event, abort_token, exec_config)
            except Exception as e:
                logger.warning("PTY execution failed (%s), falling back to pipes", e)

        return await self._execute_with_pipes(command, cwd, on_event, abort_token, exec_config)

    # --- Spawning ---

    def _build_env(self, exec_config: ShellExecutionConfig) -> dict[str, str]:
        env = sanitize_environment(os.environ, exec_config.sanitization)
        env.update(
            {
                IDENTIFICATION_ENV_VAR: IDENTIFICATION_ENV_VAR_VALUE,
                "TERM": "xterm-256color",
                "PAGER": exec_config.pager,
                "GIT_PAGER": exec_config.pager,
            }
        )
        return env

    def _build_argv(self, command: str) -> list[str]:
        shell = get_shell_configuration()
        guarded = ensure_promptvars_disabled(command, shell.shell)
        return [shell.executable, *shell.args_prefix, guarded]

    def _failed_handle(self, error: BaseException) -> ExecutionHandle:
        result: asyncio.Future[ExecutionResult] = asyncio.get_running_loop().create_future()
        result.set_result(ExecutionResult(pid=None, error=error, exit_code=1))
        return ExecutionHandle(pid=None, result=result)

    def _register(
        self,
        pid: int,
        method: str,
        process: Any,
        on_event: EventCallback,
        abort_token: CancellationToken,
    ) -> _ActiveProcess:
        active = _ActiveProcess(
            pid=pid,
            method=method,
            process=process,
            channel=OutputChannel(on_event),
            result=asyncio.get_running_loop().create_future(),
            abort_token=abort_token,
        )
        self._active[pid] = active
        return active

    async def _execute_with_pipes(
        self,
        command: str,
        cwd: str,
        on_event: EventCallback,
        abort_token: CancellationToken,
        exec_config: ShellExecutionConfig,
    ) -> ExecutionHandle:
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.subprocess_exec(
                lambda: _PipeProtocol(loop),
                *self._build_argv(command),
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(exec_config),
                start_new_session=not is_windows(),
            )
        except Exception as e:
            logger.warning("Failed to spawn shell command in %s: %s", cwd, e)
            return self._failed_handle(e)

        pid = transport.get_pid()
        active = self._register(pid, "child_process", transport, on_event, abort_token)
        protocol.attach(lambda data, stream: self._handle_output(active, data, stream))
        remove_abort = abort_token.add_listener(lambda: self._on_abort(active))
        self._spawn_task(self._run_pipes(active, protocol, remove_abort))
        return ExecutionHandle(pid=pid, result=active.result)

    def _execute_with_pty(
        self,
        command: str,
        cwd: str,
        on_event: EventCallback,
        abort_token: CancellationToken,
        exec_config: ShellExecutionConfig,
    ) -> ExecutionHandle:
        cols = exec_config.terminal_width or 80
        rows = exec_config.terminal_height or 30
        pty_proc = ptyprocess.PtyProcess.spawn(
            self._build_argv(command),
            cwd=cwd,
            env=self._build_env(exec_config),
            dimensions=(rows, cols),
        )

        active = self._register(pty_proc.pid, "pty", pty_proc, on_event, abort_token)
        remove_abort = abort_token.add_listener(lambda: self._on_abort(active))
        self._spawn_task(self._run_pty(active, pty_proc, remove_abort))
        return ExecutionHandle(pid=pty_proc.pid, result=active.result)

    def _spawn_task(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # --- Reading ---

    async def _run_pipes(
        self,
        active: _ActiveProcess,
        protocol: _PipeProtocol,
        remove_abort: Callable[[], None],
    ) -> None:
        await protocol.exited
        # Jobs started with `&` inherit the pipes; only wait briefly for
        # output still in flight from the shell itself.
        if not await self._drain(protocol.pipes_closed):
            logger.debug("Pipes of pid %d still held open after exit", active.pid)
        protocol.detach()
        remove_abort()

        if protocol.error is not None:
            logger.warning("Error reading output of pid %d: %s", active.pid, protocol.error)
            active.error = protocol.error
        self._release_transport(protocol)

        returncode = protocol.transport.get_returncode()
        if returncode is None:
            self._finish(active, None, None)
        elif returncode < 0:
            self._finish(active, None, _signal_name(-returncode))
        else:
            self._finish(active, returncode, None)

    async def _run_pty(
        self,
        active: _ActiveProcess,
        pty_proc: Any,
        remove_abort: Callable[[], None],
    ) -> None:
        loop = asyncio.get_running_loop()
        eof: asyncio.Future[None] = loop.create_future()
        fd = pty_proc.fd

        def on_readable() -> None:
            try:
                data = os.read(fd, READ_CHUNK_SIZE)
            except OSError:
                data = b""
            if not data:
                loop.remove_reader(fd)
                if not eof.done():
                    eof.set_result(None)
                return
            self._handle_output(active, data, "pty")

        loop.add_reader(fd, on_readable)
        try:
            try:
                await loop.run_in_executor(None, pty_proc.wait)
            except Exception as e:
                logger.exception("Error waiting for pty pid %d", active.pid)
                active.error = e
            if not await self._drain(eof):
                logger.debug("Terminal of pid %d still held open after exit", active.pid)
        finally:
            loop.remove_reader(fd)
        remove_abort()

        exit_code = pty_proc.exitstatus
        signal_name = _signal_name(pty_proc.signalstatus)
        try:
            await loop.run_in_executor(None, pty_proc.close)
        except OSError as e:
            logger.debug("Closing pty for pid %d failed: %s", active.pid, e)

        self._finish(active, None if signal_name else exit_code, signal_name)

    async def _drain(self, closed: asyncio.Future[None]) -> bool:
        """Wait up to PIPE_DRAIN_TIMEOUT_S for ``closed``; False on timeout."""
        try:
            await asyncio.wait_for(asyncio.shield(closed), PIPE_DRAIN_TIMEOUT_S)
        except asyncio.TimeoutError:
            return False
        return True

    def _release_transport(self, protocol: _PipeProtocol) -> None:
        transport = protocol.transport
        if protocol.pipes_closed.done():
            transport.close()
            return

        self._lingering.add(transport)

        def on_closed(_: asyncio.Future[None]) -> None:
            self._lingering.discard(transport)
            transport.close()

        protocol.pipes_closed.add_done_callback(on_closed)

    def _decoder(self, active: _ActiveProcess, stream: str) -> codecs.IncrementalDecoder:
        decoder = active.decoders.get(stream)
        if decoder is None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            active.decoders[stream] = decoder
        return decoder

    def _handle_output(self, active: _ActiveProcess, data: bytes, stream: str) -> None:
        active.chunks.append(data)
        active.bytes_received += len(data)

        if active.streaming_text and active.sniffed_bytes < MAX_SNIFF_SIZE:
            sniff = b"".join(active.chunks[:SNIFF_CHUNK_COUNT])
            active.sniffed_bytes = len(sniff)
            if is_binary(sniff):
                active.streaming_text = False
                active.channel.send(BinaryDetectedEvent())

        if active.streaming_text:
            decoded = self._decoder(active, stream).decode(data)
            active.output.append(decoded)
            if decoded:
                active.channel.send(DataEvent(decoded))
        else:
            active.channel.send(BinaryProgressEvent(active.bytes_received))

    def _finish(self, active: _ActiveProcess, exit_code: int | None, signal_name: str | None) -> None:
        active.exited = True

        for decoder in active.decoders.values():
            remaining = decoder.decode(b"", final=True)
            if remaining:
                active.output.append(remaining)
                if active.streaming_text:
                    active.channel.send(DataEvent(remaining))

        self._active.pop(active.pid, None)
        self._exited[active.pid] = _ExitedProcess(exit_code, signal_name, active.channel)
        self._retain(active.pid)

        active.channel.send(ExitEvent(exit_code, signal_name))

        callbacks, active.exit_callbacks = active.exit_callbacks, []
        for callback in callbacks:
            try:
                callback(exit_code, signal_name)
            except Exception:
                logger.exception("Exit callback for pid %d failed", active.pid)

        if not active.result.done():
            combined = active.output.text
            if active.output.truncated:
                combined += (
                    "\n[SHELLPILOT_WARNING: Output truncated. The buffer is limited to "
                    f"{MAX_CHILD_PROCESS_BUFFER_SIZE // (1024 * 1024)}MB.]"
                )
            active.result.set_result(
                ExecutionResult(
                    pid=active.pid,
                    output=strip_ansi(combined).strip(),
                    raw_output=b"".join(active.chunks),
                    exit_code=exit_code,
                    signal=signal_name,
                    error=active.error,
                    aborted=active.abort_token.cancelled,
                    execution_method=active.method,
                )
            )

    def _retain(self, pid: int) -> None:
        """Keep the exit status of ``pid`` for late subscribers, then forget it."""
        previous = self._retention.pop(pid, None)
        if previous is not None:
            previous.cancel()
        self._retention[pid] = asyncio.get_running_loop().call_later(EXITED_RETENTION_S, self._forget, pid)

    def _forget(self, pid: int) -> None:
        self._retention.pop(pid, None)
        self._exited.pop(pid, None)

    # --- Termination ---

    def _on_abort(self, active: _ActiveProcess) -> None:
        if not active.exited:
            logger.debug("Aborting pid %d", active.pid)
            self._spawn_task(self._terminate(active))

    async def _terminate(self, active: _ActiveProcess, escalate: bool = True) -> None:
        if active.kill_requested or active.exited:
            return
        active.kill_requested = True

        if not self._send_signal(active, signal_module.SIGTERM):
            return
        if not escalate:
            return

        await asyncio.sleep(SIGKILL_TIMEOUT_S)
        if not active.exited:
            self._send_signal(active, getattr(signal_module, "SIGKILL", signal_module.SIGTERM))

    def _send_signal(self, active: _ActiveProcess, sig: int) -> bool:
        try:
            if is_windows():
                active.process.kill()
            else:
                os.killpg(active.pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.warning("Cannot signal pid %d: %s", active.pid, e)
            return False
        return True

    def kill(self, pid: int) -> None:
        """Request termination of ``pid`` and its process group.

        Unknown, exited or already-killed pids are ignored.
        """
        active = self._active.get(pid)
        if active is None:
            return
        self._spawn_task(self._terminate(active))

    # --- Foreground / background ---

    def background(self, pid: int) -> None:
        """Resolve the pending result of ``pid`` as backgrounded, leaving it running."""
        active = self._active.get(pid)
        if active is None or active.result.done():
            return

        active.channel.detach()
        active.result.set_result(
            ExecutionResult(
                pid=pid,
                backgrounded=True,
                output=active.output.text,
                execution_method=active.method,
            )
        )
        logger.debug("Moved pid %d to background", pid)

    def subscribe(self, pid: int, callback: EventCallback) -> Callable[[], None]:
        """Attach ``callback`` as the consumer of ``pid``'s events.

        Events queued since the previous consumer detached are delivered
        first. Returns a function that detaches the callback.
        """
        channel = self._channel(pid)
        if channel is None:
            return lambda: None
        channel.attach(callback)
        return lambda: channel.detach(callback)

    def on_exit(self, pid: int, callback: ExitCallback) -> Callable[[], None]:
        """Call ``callback(exit_code, signal)`` once when ``pid`` exits."""
        active = self._active.get(pid)
        if active is not None:
            active.exit_callbacks.append(callback)

            def remove() -> None:
                if callback in active.exit_callbacks:
                    active.exit_callbacks.remove(callback)

            return remove

        exited = self._exited.get(pid)
        if exited is not None:
            callback(exited.exit_code, exited.signal)
        return lambda: None

    def _channel(self, pid: int) -> OutputChannel | None:
        active = self._active.get(pid)
        if active is not None:
            return active.channel
        exited = self._exited.get(pid)
        if exited is not None:
            return exited.channel
        return None

    # --- PTY interaction ---

    def is_active(self, pid: int) -> bool:
        if pid not in self._active:
            return False
        try:
            os.kill(pid, 0)
        except OSError:
            return False
        return True

    def write_to_pty(self, pid: int, text: str) -> None:
        active = self._active.get(pid)
        if active is None or active.method != "pty":
            return
        try:
            os.write(active.process.fd, text.encode("utf-8"))
        except OSError as e:
            logger.debug("Write to pty %d failed: %s", pid, e)

    def resize_pty(self, pid: int, cols: int, rows: int) -> None:
        active = self._active.get(pid)
        if active is None or active.method != "pty":
            return
        try:
            active.process.setwinsize(rows, cols)
        except OSError as e:
            # The pty may have exited between the lookup and the ioctl.
            logger.debug("Resize of pty %d ignored: %s", pid, e)

    # --- Teardown ---

    def close(self) -> None:
        """Drop retained exit statuses and release pipes left open by detached jobs.

        Running processes are not killed.
        """
        for handle in self._retention.values():
            handle.cancel()
        self._retention.clear()
        self._exited.clear()

        lingering, self._lingering = self._lingering, set()
        for transport in lingering:
            transport.close()
