"""CLI entry point using typer."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Callable

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from shellpilot import __version__
from shellpilot.config import (
    CONFIG_FILE,
    LOG_FILE,
    AppConfig,
    LoggingConfig,
    ShellConfig,
    StorageConfig,
    ensure_config_dir,
    load_config,
    save_config,
)
from shellpilot.services.cancellation import CancellationToken
from shellpilot.services.history import HistoryItem, HistoryItemType, HistoryManager, TranscriptLog
from shellpilot.services.orchestrator import ShellCommandProcessor
from shellpilot.services.shell_state import ShellStatus
from shellpilot.storage import database
from shellpilot.storage.models import CommandRecord, ToolCallRecord, ToolCallStatus
from shellpilot.utils.formatting import format_duration
from shellpilot.utils.system import check_project_dir, check_shell, is_windows

app = typer.Typer(
    name="shellpilot",
    help="Run shell commands with background jobs and a conversation transcript.",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    ToolCallStatus.EXECUTING: "yellow",
    ToolCallStatus.SUCCESS: "green",
    ToolCallStatus.ERROR: "red",
    ToolCallStatus.CANCELLED: "dim",
}

REPL_HELP = """Commands:
  <command>      run a shell command in the foreground
  :send TEXT     type a line into the running command (PTY mode)
  :bg            move the running command to the background
  :jobs          list background shells
  :dismiss PID   kill (if running) and forget a background shell
  :toggle        show or hide the background shell panel
  :transcript    print the conversation transcript
  :help          show this help
  :quit          exit (running background shells are dismissed)
Ctrl+C cancels the running command."""


def _setup_logging(config: AppConfig, stream: bool = False) -> None:
    ensure_config_dir()
    log_path = Path(config.logging.file).expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(str(log_path)),
            *([logging.StreamHandler()] if stream else []),
        ],
    )


def _print_record(record: ToolCallRecord, show_text: bool = True) -> None:
    style = STATUS_STYLES.get(record.status, "white")
    header = Text()
    header.append(f"[{record.status.value}]", style=style)
    header.append(f" {record.command_text}", style="bold")
    if record.pid is not None:
        header.append(f" (pid {record.pid})", style="dim")
    console.print(header)
    if show_text and record.result_text:
        console.print(Text(record.result_text))


def _install_sigint(loop: asyncio.AbstractEventLoop, handler: Callable[[], None]) -> bool:
    if is_windows():
        return False
    loop.add_signal_handler(signal.SIGINT, handler)
    return True


@app.command()
def init() -> None:
    """Interactive setup wizard."""
    console.print(f"\n[bold]shellpilot v{__version__}[/bold]")
    console.print("Interactive Setup\n")

    # 1. Check the platform shell
    console.print("[dim]Checking shell...[/dim]")
    found, shell_info = check_shell()
    if found:
        console.print(f"  Shell: [green]{shell_info}[/green]")
    else:
        console.print(f"  [yellow]Warning: {shell_info}[/yellow]")

    # 2. Target directory
    console.print("\n[bold]Step 1:[/bold] Target Directory")
    console.print("  Commands start in this directory.")
    target_dir = typer.prompt("  Directory", default=".")
    valid, resolved = check_project_dir(target_dir)
    if not valid:
        console.print(f"  [yellow]Warning: {resolved}[/yellow]")
        create = typer.confirm("  Create this directory?", default=True)
        if create:
            Path(target_dir).expanduser().resolve().mkdir(parents=True, exist_ok=True)
            console.print("  [green]Directory created.[/green]")

    # 3. PTY mode
    console.print("\n[bold]Step 2:[/bold] Interactive Mode")
    console.print("  Run commands in a pseudo-terminal so they see a real TTY.")
    interactive = typer.confirm("  Enable PTY mode?", default=False)

    config = AppConfig(
        shell=ShellConfig(target_dir=target_dir, interactive=interactive),
        storage=StorageConfig(),
        logging=LoggingConfig(),
    )
    save_config(config)

    console.print(f"\n[green]Configuration saved to {CONFIG_FILE}[/green]")
    console.print("\nNext steps:")
    console.print("  [bold]shellpilot shell[/bold]           Start the interactive shell")
    console.print("  [bold]shellpilot run 'ls -la'[/bold]    Run a single command\n")


async def _run_once(config: AppConfig, command: str) -> ToolCallRecord | None:
    await database.init_db(config.storage.db_path)
    processor = ShellCommandProcessor(HistoryManager(), TranscriptLog(), config=config)
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    handled_sigint = _install_sigint(loop, token.cancel)
    try:
        with console.status(f"Running [bold]{command}[/bold]..."):
            return await processor.run_command(command, token)
    finally:
        if handled_sigint:
            loop.remove_signal_handler(signal.SIGINT)
        processor.dispose()
        await processor.wait_idle()
        await database.close_db()


@app.command()
def run(
    command: str = typer.Argument(..., help="Shell command to run"),
    interactive: bool = typer.Option(None, "--interactive/--no-interactive", "-i", help="Use a PTY"),
    cwd: str = typer.Option(None, "--cwd", "-C", help="Directory to run in"),
) -> None:
    """Run a single shell command and print its result."""
    config = load_config()
    if interactive is not None:
        config.shell.interactive = interactive
    if cwd is not None:
        config.shell.target_dir = cwd

    valid, resolved = check_project_dir(config.shell.target_dir)
    if not valid:
        console.print(f"[red]{resolved}[/red]")
        raise typer.Exit(1)

    _setup_logging(config)
    record = asyncio.run(_run_once(config, command))

    if record is None:
        console.print("[red]Command failed unexpectedly. See the log for details.[/red]")
        raise typer.Exit(1)

    _print_record(record)
    if record.status == ToolCallStatus.ERROR:
        raise typer.Exit(1)
    if record.status == ToolCallStatus.CANCELLED:
        raise typer.Exit(130)


class _ReplRenderer:
    """Print history items as they arrive, streaming the pending run's output."""

    def __init__(self) -> None:
        self._streamed_call: str | None = None
        self._streamed_length = 0
        self._at_line_start = True

    def __call__(self, kind: str, payload: Any) -> None:
        if kind == "output":
            self._on_output(payload)
        elif kind == "pending":
            self._on_pending(payload)
        elif payload is not None:
            self._on_added(payload)

    def _on_output(self, chunk: str) -> None:
        console.out(chunk, end="", highlight=False)
        self._streamed_length += len(chunk)
        self._at_line_start = chunk.endswith("\n")

    def _on_pending(self, item: HistoryItem | None) -> None:
        if item is None or not item.tools:
            if not self._at_line_start:
                console.out("")
                self._at_line_start = True
            return

        tool = item.tools[0]
        if tool.call_id != self._streamed_call:
            self._streamed_call = tool.call_id
            self._streamed_length = 0
            self._at_line_start = True

        # Streamed text arrives through "output"; only binary placeholders
        # replace the text.
        if tool.result_text and len(tool.result_text) != self._streamed_length:
            console.print(Text(tool.result_text, style="dim"))
            self._streamed_length = len(tool.result_text)
            self._at_line_start = True

    def _on_added(self, item: HistoryItem) -> None:
        if item.type == HistoryItemType.TOOL_GROUP:
            for tool in item.tools:
                streamed = tool.call_id == self._streamed_call and self._streamed_length > 0
                _print_record(tool, show_text=not streamed or tool.status != ToolCallStatus.SUCCESS)
            self._streamed_call = None
            self._streamed_length = 0
        elif item.type == HistoryItemType.INFO:
            console.print(Text(item.text, style="cyan"))
        elif item.type == HistoryItemType.ERROR:
            console.print(Text(item.text, style="red"))


def _jobs_table(processor: ShellCommandProcessor) -> Table:
    table = Table(title="Background Shells")
    table.add_column("PID", style="cyan")
    table.add_column("Status")
    table.add_column("Exit", justify="right")
    table.add_column("Command")
    table.add_column("Last Output", style="dim")

    for shell in processor.state.background_shells.values():
        if shell.is_binary:
            last = f"[binary, {shell.binary_bytes_received} bytes]"
        elif isinstance(shell.output, str):
            lines = shell.output.strip().splitlines()
            last = lines[-1] if lines else ""
        else:
            last = ""
        status_style = "green" if shell.status == ShellStatus.RUNNING else "dim"
        table.add_row(
            str(shell.pid),
            Text(shell.status.value, style=status_style),
            "" if shell.exit_code is None else str(shell.exit_code),
            shell.command,
            last[:60],
        )
    return table


async def _repl(config: AppConfig) -> None:
    await database.init_db(config.storage.db_path)

    history = HistoryManager()
    transcript = TranscriptLog()
    loop = asyncio.get_running_loop()
    current: dict[str, object] = {}

    processor = ShellCommandProcessor(
        history,
        transcript,
        config=config,
        on_exec=lambda task: current.__setitem__("task", task),
    )
    history.add_listener(_ReplRenderer())

    def on_sigint() -> None:
        token = current.get("token")
        task = current.get("task")
        if isinstance(token, CancellationToken) and isinstance(task, asyncio.Task) and not task.done():
            token.cancel()
        else:
            console.print("\n[dim]Type :quit to exit.[/dim]")

    def on_resize() -> None:
        pid = processor.state.active_shell_pid
        if pid is not None:
            processor.service.resize_pty(pid, console.size.width, console.size.height)

    handled_sigint = _install_sigint(loop, on_sigint)
    if not is_windows():
        loop.add_signal_handler(signal.SIGWINCH, on_resize)
    console.print(f"[bold]shellpilot v{__version__}[/bold] in {config.get_target_dir()}")
    console.print("[dim]Type :help for commands.[/dim]")

    try:
        while True:
            try:
                line = await loop.run_in_executor(None, input, "$ ")
            except EOFError:
                break

            stripped = line.strip()
            if not stripped:
                continue

            if stripped.startswith(":"):
                name, _, arg = stripped[1:].partition(" ")
                if name in ("quit", "q", "exit"):
                    break
                if name == "help":
                    console.print(REPL_HELP)
                elif name == "bg":
                    if not processor.background_current_shell():
                        console.print("[yellow]No command is running in the foreground.[/yellow]")
                elif name == "send":
                    pid = processor.state.active_shell_pid
                    if pid is None:
                        console.print("[yellow]No command is running in the foreground.[/yellow]")
                    else:
                        processor.service.write_to_pty(pid, arg + "\n")
                elif name == "jobs":
                    if processor.state.background_shells:
                        console.print(_jobs_table(processor))
                    else:
                        console.print("[dim]No background shells.[/dim]")
                elif name == "dismiss":
                    try:
                        pid = int(arg.strip())
                    except ValueError:
                        console.print("[red]Usage: :dismiss PID[/red]")
                        continue
                    if processor.dismiss_background_shell(pid):
                        console.print(f"[green]Dismissed {pid}.[/green]")
                    else:
                        console.print(f"[yellow]No background shell with PID {pid}.[/yellow]")
                elif name == "toggle":
                    processor.toggle_background_shell()
                    if processor.state.is_background_shell_visible:
                        console.print(_jobs_table(processor))
                elif name == "transcript":
                    for entry in transcript.entries:
                        console.print(Text(entry))
                        console.print()
                else:
                    console.print(f"[red]Unknown command: :{name}[/red]")
                continue

            task = current.get("task")
            if isinstance(task, asyncio.Task) and not task.done():
                console.print("[yellow]A command is already running. Use :bg or Ctrl+C first.[/yellow]")
                continue

            token = CancellationToken()
            current["token"] = token
            processor.handle_shell_command(line, token)
    finally:
        if handled_sigint:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGWINCH)
        for pid, shell in list(processor.state.background_shells.items()):
            if shell.status == ShellStatus.RUNNING:
                processor.dismiss_background_shell(pid)
        processor.dispose()
        await processor.wait_idle()
        await database.close_db()


@app.command()
def shell() -> None:
    """Start the interactive shell."""
    config = load_config()
    valid, resolved = check_project_dir(config.shell.target_dir)
    if not valid:
        console.print(f"[red]{resolved}[/red]")
        raise typer.Exit(1)

    _setup_logging(config)
    try:
        asyncio.run(_repl(config))
    except KeyboardInterrupt:
        pass
    console.print("\n[dim]Bye.[/dim]")


@app.command()
def config(
    key: str = typer.Argument(None, help="Config key (e.g., shell.target_dir)"),
    value: str = typer.Argument(None, help="New value"),
) -> None:
    """View or modify configuration."""
    if not CONFIG_FILE.exists():
        console.print("[red]Not configured. Run 'shellpilot init'.[/red]")
        raise typer.Exit(1)

    cfg = load_config()
    san = cfg.shell.sanitization

    if key is None:
        # Show all config
        table = Table(title="Configuration")
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("shell.target_dir", cfg.shell.target_dir)
        table.add_row("shell.interactive", str(cfg.shell.interactive))
        table.add_row("shell.terminal_width", str(cfg.shell.terminal_width))
        table.add_row("shell.terminal_height", str(cfg.shell.terminal_height))
        table.add_row("shell.show_color", str(cfg.shell.show_color))
        table.add_row("shell.pager", cfg.shell.pager)
        table.add_row("shell.max_output", str(cfg.shell.max_output))
        table.add_row("shell.restore_visibility_delay_ms", str(cfg.shell.restore_visibility_delay_ms))
        table.add_row(
            "sanitization.allowed_environment_variables",
            ", ".join(san.allowed_environment_variables) or "(none)",
        )
        table.add_row(
            "sanitization.blocked_environment_variables",
            ", ".join(san.blocked_environment_variables) or "(none)",
        )
        table.add_row(
            "sanitization.enable_environment_variable_redaction",
            str(san.enable_environment_variable_redaction),
        )
        table.add_row("storage.db_path", cfg.storage.db_path)
        table.add_row("logging.level", cfg.logging.level)
        table.add_row("logging.file", cfg.logging.file)

        console.print(table)
        return

    if value is None:
        console.print("[red]Usage: shellpilot config <key> <value>[/red]")
        raise typer.Exit(1)

    # Set config value
    parts = key.split(".")
    if len(parts) != 2:
        console.print("[red]Key format: section.key (e.g., shell.pager)[/red]")
        raise typer.Exit(1)

    section, attr = parts
    section_map = {"shell": cfg.shell, "sanitization": san, "storage": cfg.storage, "logging": cfg.logging}

    if section not in section_map:
        console.print(f"[red]Unknown section: {section}[/red]")
        raise typer.Exit(1)

    obj = section_map[section]
    if not hasattr(obj, attr) or attr == "sanitization":
        console.print(f"[red]Unknown key: {key}[/red]")
        raise typer.Exit(1)

    # Type coercion
    current = getattr(obj, attr)
    try:
        if isinstance(current, bool):
            typed_value = value.lower() in ("true", "1", "yes")
        elif isinstance(current, int):
            typed_value = int(value)
        elif isinstance(current, list):
            typed_value = [v.strip() for v in value.split(",") if v.strip()]
        else:
            typed_value = value
    except ValueError:
        console.print(f"[red]Invalid value type for {key}[/red]")
        raise typer.Exit(1)

    setattr(obj, attr, typed_value)
    save_config(cfg)
    console.print(f"[green]{key} = {typed_value}[/green]")


async def _load_history(db_path: str, limit: int) -> list[CommandRecord]:
    await database.init_db(db_path)
    try:
        rows = await database.get_recent_commands(limit)
        return [CommandRecord(**row) for row in rows]
    finally:
        await database.close_db()


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries"),
) -> None:
    """Show recent command history."""
    cfg = load_config()
    db_path = Path(cfg.storage.db_path).expanduser()
    if not db_path.exists():
        console.print("[dim]No command history yet.[/dim]")
        return

    records = asyncio.run(_load_history(cfg.storage.db_path, limit))
    if not records:
        console.print("[dim]No command history yet.[/dim]")
        return

    table = Table(title="Command History")
    table.add_column("When", style="dim")
    table.add_column("Status")
    table.add_column("Exit", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Source", style="dim")
    table.add_column("Command", style="bold")

    for record in records:
        status = ToolCallStatus(record.status)
        table.add_row(
            str(record.created_at),
            Text(status.value, style=STATUS_STYLES[status]),
            "" if record.exit_code is None else str(record.exit_code),
            format_duration(record.execution_time_ms or 0),
            record.source,
            record.command,
        )
    console.print(table)


@app.command()
def logs(
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
) -> None:
    """View shellpilot logs."""
    log_path = Path(LOG_FILE).expanduser().resolve()
    if not log_path.exists():
        console.print("[dim]No log file found.[/dim]")
        return

    if follow:
        import subprocess

        try:
            subprocess.run(["tail", "-f", "-n", str(lines), str(log_path)])
        except KeyboardInterrupt:
            pass
    else:
        content = log_path.read_text()
        log_lines = content.strip().split("\n")
        for line in log_lines[-lines:]:
            console.print(line, markup=False)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"shellpilot v{__version__}")

    found, shell_info = check_shell()
    if found:
        console.print(f"Shell: {shell_info}")
    else:
        console.print("Shell: [yellow]not found[/yellow]")

    console.print(f"Python: {sys.version.split()[0]}")
    console.print(f"Config: {CONFIG_FILE}")


if __name__ == "__main__":
    app()
