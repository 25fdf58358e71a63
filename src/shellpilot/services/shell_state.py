"""Background shell state: immutable snapshot, actions and reducer."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Union

from shellpilot.services.execution import (
    BinaryDetectedEvent,
    BinaryProgressEvent,
    DataEvent,
    OutputEvent,
    ShellExecutionService,
)

logger = logging.getLogger(__name__)


class ShellStatus(str, Enum):
    RUNNING = "running"
    EXITED = "exited"
    DISMISSED = "dismissed"


@dataclass(frozen=True)
class BackgroundShell:
    pid: int
    command: str
    output: Any = ""
    status: ShellStatus = ShellStatus.RUNNING
    is_binary: bool = False
    binary_bytes_received: int = 0
    exit_code: int | None = None


def _empty_shells() -> Mapping[int, BackgroundShell]:
    return MappingProxyType({})


@dataclass(frozen=True)
class ShellState:
    background_shells: Mapping[int, BackgroundShell] = field(default_factory=_empty_shells)
    is_background_shell_visible: bool = False
    active_shell_pid: int | None = None
    last_shell_output_time: float = 0.0
    revision: int = 0


# --- Actions ---


@dataclass(frozen=True)
class RegisterShell:
    pid: int
    command: str
    initial_output: Any = ""


@dataclass(frozen=True)
class AppendShellOutput:
    pid: int
    chunk: Any


@dataclass(frozen=True)
class UpdateShell:
    pid: int
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class DismissShell:
    pid: int


@dataclass(frozen=True)
class SetVisibility:
    visible: bool


@dataclass(frozen=True)
class ToggleVisibility:
    pass


@dataclass(frozen=True)
class SyncBackgroundShells:
    pass


@dataclass(frozen=True)
class SetActivePid:
    pid: int | None


@dataclass(frozen=True)
class SetOutputTime:
    time: float


ShellAction = Union[
    RegisterShell,
    AppendShellOutput,
    UpdateShell,
    DismissShell,
    SetVisibility,
    ToggleVisibility,
    SyncBackgroundShells,
    SetActivePid,
    SetOutputTime,
]

UPDATABLE_FIELDS = frozenset({"status", "exit_code", "is_binary", "binary_bytes_received", "output"})


def _with_shells(state: ShellState, shells: dict[int, BackgroundShell], **changes: Any) -> ShellState:
    return dataclasses.replace(state, background_shells=MappingProxyType(shells), **changes)


def shell_reducer(state: ShellState, action: ShellAction) -> ShellState:
    """Apply ``action`` to ``state`` and return the new snapshot.

    Output appends deliberately leave ``revision`` untouched; renderers
    pick them up on their own refresh cadence or on the next sync.
    """
    shells = state.background_shells

    if isinstance(action, RegisterShell):
        if action.pid in shells:
            return state
        new_shells = dict(shells)
        new_shells[action.pid] = BackgroundShell(
            pid=action.pid,
            command=action.command,
            output=action.initial_output,
        )
        return _with_shells(state, new_shells, revision=state.revision + 1)

    if isinstance(action, AppendShellOutput):
        shell = shells.get(action.pid)
        if shell is None or shell.status != ShellStatus.RUNNING:
            return state
        if isinstance(action.chunk, str) and isinstance(shell.output, str):
            output: Any = shell.output + action.chunk
        else:
            # Structured terminal snapshots carry the full screen, not a delta.
            output = action.chunk
        new_shells = dict(shells)
        new_shells[action.pid] = dataclasses.replace(shell, output=output)
        return _with_shells(state, new_shells)

    if isinstance(action, UpdateShell):
        shell = shells.get(action.pid)
        if shell is None:
            return state
        changes = {k: v for k, v in action.changes.items() if k in UPDATABLE_FIELDS}
        if shell.is_binary:
            changes["is_binary"] = True
        if shell.status != ShellStatus.RUNNING and changes.get("status") == ShellStatus.RUNNING:
            changes.pop("status")
        new_shells = dict(shells)
        new_shells[action.pid] = dataclasses.replace(shell, **changes)
        return _with_shells(state, new_shells, revision=state.revision + 1)

    if isinstance(action, DismissShell):
        if action.pid not in shells:
            return state
        new_shells = {pid: shell for pid, shell in shells.items() if pid != action.pid}
        visible = state.is_background_shell_visible and bool(new_shells)
        return _with_shells(
            state,
            new_shells,
            is_background_shell_visible=visible,
            revision=state.revision + 1,
        )

    if isinstance(action, SetVisibility):
        if state.is_background_shell_visible == action.visible:
            return state
        return dataclasses.replace(
            state,
            is_background_shell_visible=action.visible,
            revision=state.revision + 1,
        )

    if isinstance(action, ToggleVisibility):
        return dataclasses.replace(
            state,
            is_background_shell_visible=not state.is_background_shell_visible,
            revision=state.revision + 1,
        )

    if isinstance(action, SyncBackgroundShells):
        return dataclasses.replace(state, revision=state.revision + 1)

    if isinstance(action, SetActivePid):
        return dataclasses.replace(state, active_shell_pid=action.pid)

    if isinstance(action, SetOutputTime):
        return dataclasses.replace(state, last_shell_output_time=action.time)

    raise TypeError(f"Unhandled shell action: {action!r}")


ShellExitHook = Callable[[int, Union[int, None], Union[str, None]], None]


class ShellStore:
    """Owns the background shell snapshot and the driver subscriptions behind it."""

    def __init__(
        self,
        service: ShellExecutionService,
        on_shell_exit: ShellExitHook | None = None,
    ) -> None:
        self._service = service
        self._on_shell_exit = on_shell_exit
        self._state = ShellState()
        self._subscriptions: dict[int, Callable[[], None]] = {}

    @property
    def state(self) -> ShellState:
        return self._state

    @property
    def running_count(self) -> int:
        return sum(1 for s in self._state.background_shells.values() if s.status == ShellStatus.RUNNING)

    def get(self, pid: int) -> BackgroundShell | None:
        return self._state.background_shells.get(pid)

    def has_subscription(self, pid: int) -> bool:
        return pid in self._subscriptions

    def dispatch(self, action: ShellAction) -> ShellState:
        self._state = shell_reducer(self._state, action)
        return self._state

    def register_shell(self, pid: int, command: str, initial_output: Any = "") -> None:
        """Start tracking a backgrounded process and take over its event stream."""
        if pid in self._state.background_shells:
            logger.warning("Shell %d is already registered", pid)
            return

        self.dispatch(RegisterShell(pid, command, initial_output))

        data_unsubscribe = self._service.subscribe(pid, lambda event: self._handle_event(pid, event))
        self._subscriptions[pid] = data_unsubscribe

        exit_unsubscribe = self._service.on_exit(
            pid, lambda exit_code, signal: self._handle_exit(pid, exit_code, signal)
        )

        if pid in self._subscriptions:

            def unsubscribe() -> None:
                exit_unsubscribe()
                data_unsubscribe()

            self._subscriptions[pid] = unsubscribe

        logger.debug("Registered background shell %d: %s", pid, command)

    def dismiss_shell(self, pid: int) -> bool:
        """Forget ``pid``, killing it first if it still runs.

        Returns False when the pid is not tracked; calling twice never
        issues a second kill.
        """
        shell = self._state.background_shells.get(pid)
        if shell is None:
            return False

        if shell.status == ShellStatus.RUNNING:
            self._service.kill(pid)

        self._release(pid)
        self.dispatch(DismissShell(pid))
        logger.debug("Dismissed background shell %d", pid)
        return True

    def close(self) -> None:
        for pid in list(self._subscriptions):
            self._release(pid)

    def _release(self, pid: int) -> None:
        unsubscribe = self._subscriptions.pop(pid, None)
        if unsubscribe is not None:
            unsubscribe()

    def _handle_event(self, pid: int, event: OutputEvent) -> None:
        if isinstance(event, DataEvent):
            self.dispatch(AppendShellOutput(pid, event.chunk))
        elif isinstance(event, BinaryDetectedEvent):
            self.dispatch(UpdateShell(pid, {"is_binary": True}))
        elif isinstance(event, BinaryProgressEvent):
            self.dispatch(
                UpdateShell(pid, {"is_binary": True, "binary_bytes_received": event.bytes_received})
            )

    def _handle_exit(self, pid: int, exit_code: int | None, signal: str | None) -> None:
        if pid not in self._state.background_shells:
            return
        self.dispatch(UpdateShell(pid, {"status": ShellStatus.EXITED, "exit_code": exit_code}))
        self._release(pid)
        logger.debug("Background shell %d exited (code=%s, signal=%s)", pid, exit_code, signal)
        if self._on_shell_exit is not None:
            self._on_shell_exit(pid, exit_code, signal)
