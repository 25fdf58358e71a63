"""Tests for the background shell reducer and store."""

from __future__ import annotations

import dataclasses

import pytest

from shellpilot.services.execution import BinaryDetectedEvent, BinaryProgressEvent, DataEvent, ExitEvent
from shellpilot.services.shell_state import (
    AppendShellOutput,
    DismissShell,
    RegisterShell,
    SetActivePid,
    SetOutputTime,
    SetVisibility,
    ShellState,
    ShellStatus,
    ShellStore,
    SyncBackgroundShells,
    ToggleVisibility,
    UpdateShell,
    shell_reducer,
)


def _registered(*pids: int) -> ShellState:
    state = ShellState()
    for pid in pids:
        state = shell_reducer(state, RegisterShell(pid, f"cmd-{pid}", "init\n"))
    return state


class TestShellReducer:
    def test_register(self):
        state = shell_reducer(ShellState(), RegisterShell(1, "sleep 5", "hi"))
        shell = state.background_shells[1]
        assert shell.command == "sleep 5"
        assert shell.output == "hi"
        assert shell.status == ShellStatus.RUNNING
        assert state.revision == 1

    def test_register_twice_is_noop(self):
        state = _registered(1)
        assert shell_reducer(state, RegisterShell(1, "other", "")) is state

    def test_state_is_immutable(self):
        state = _registered(1)
        with pytest.raises(dataclasses.FrozenInstanceError):
            state.revision = 5
        with pytest.raises(TypeError):
            state.background_shells[2] = state.background_shells[1]

    def test_append_does_not_bump_revision(self):
        state = _registered(1)
        new = shell_reducer(state, AppendShellOutput(1, "more"))
        assert new.background_shells[1].output == "init\nmore"
        assert new.revision == state.revision
        assert state.background_shells[1].output == "init\n"

    def test_append_structured_replaces(self):
        state = _registered(1)
        screen = [["line"]]
        new = shell_reducer(state, AppendShellOutput(1, screen))
        assert new.background_shells[1].output is screen

    def test_append_unknown_or_exited_is_noop(self):
        state = _registered(1)
        assert shell_reducer(state, AppendShellOutput(2, "x")) is state

        exited = shell_reducer(state, UpdateShell(1, {"status": ShellStatus.EXITED, "exit_code": 0}))
        assert shell_reducer(exited, AppendShellOutput(1, "late")) is exited

    def test_update(self):
        state = shell_reducer(_registered(1), UpdateShell(1, {"status": ShellStatus.EXITED, "exit_code": 2}))
        shell = state.background_shells[1]
        assert shell.status == ShellStatus.EXITED
        assert shell.exit_code == 2

    def test_binary_is_sticky(self):
        state = shell_reducer(_registered(1), UpdateShell(1, {"is_binary": True}))
        state = shell_reducer(state, UpdateShell(1, {"is_binary": False, "binary_bytes_received": 10}))
        assert state.background_shells[1].is_binary
        assert state.background_shells[1].binary_bytes_received == 10

    def test_exited_never_returns_to_running(self):
        state = shell_reducer(_registered(1), UpdateShell(1, {"status": ShellStatus.EXITED}))
        state = shell_reducer(state, UpdateShell(1, {"status": ShellStatus.RUNNING}))
        assert state.background_shells[1].status == ShellStatus.EXITED

    def test_dismiss_last_hides_panel(self):
        state = shell_reducer(_registered(1, 2), SetVisibility(True))
        state = shell_reducer(state, DismissShell(1))
        assert state.is_background_shell_visible
        state = shell_reducer(state, DismissShell(2))
        assert not state.background_shells
        assert not state.is_background_shell_visible

    def test_dismiss_unknown_is_noop(self):
        state = _registered(1)
        assert shell_reducer(state, DismissShell(9)) is state

    def test_visibility(self):
        state = shell_reducer(ShellState(), ToggleVisibility())
        assert state.is_background_shell_visible
        state = shell_reducer(state, SetVisibility(False))
        assert not state.is_background_shell_visible

    def test_sync_bumps_revision(self):
        state = _registered(1)
        assert shell_reducer(state, SyncBackgroundShells()).revision == state.revision + 1

    def test_active_pid_and_output_time(self):
        state = shell_reducer(ShellState(), SetActivePid(42))
        state = shell_reducer(state, SetOutputTime(123.5))
        assert state.active_shell_pid == 42
        assert state.last_shell_output_time == 123.5

    def test_unknown_action(self):
        with pytest.raises(TypeError):
            shell_reducer(ShellState(), object())


class FakeService:
    """Driver double that records subscriptions and lets tests push events."""

    def __init__(self) -> None:
        self.consumers: dict = {}
        self.exit_callbacks: dict = {}
        self.exited: dict = {}
        self.killed: list[int] = []

    def subscribe(self, pid, callback):
        self.consumers[pid] = callback

        def unsubscribe():
            if self.consumers.get(pid) is callback:
                del self.consumers[pid]

        return unsubscribe

    def on_exit(self, pid, callback):
        if pid in self.exited:
            callback(*self.exited[pid])
            return lambda: None
        self.exit_callbacks.setdefault(pid, []).append(callback)

        def remove():
            if callback in self.exit_callbacks.get(pid, []):
                self.exit_callbacks[pid].remove(callback)

        return remove

    def kill(self, pid):
        self.killed.append(pid)

    def emit(self, pid, event):
        self.consumers[pid](event)

    def finish(self, pid, exit_code=0, signal=None):
        self.exited[pid] = (exit_code, signal)
        for callback in self.exit_callbacks.pop(pid, []):
            callback(exit_code, signal)


class TestShellStore:
    def test_register_streams_output(self):
        service = FakeService()
        store = ShellStore(service)
        store.register_shell(10, "tail -f log", "a")

        service.emit(10, DataEvent("b"))
        service.emit(10, BinaryDetectedEvent())
        service.emit(10, BinaryProgressEvent(2048))

        shell = store.get(10)
        assert shell.output == "ab"
        assert shell.is_binary
        assert shell.binary_bytes_received == 2048
        assert store.running_count == 1
        assert store.has_subscription(10)

    def test_exit_releases_subscription_and_reports(self):
        service = FakeService()
        exits = []
        store = ShellStore(service, on_shell_exit=lambda pid, code, sig: exits.append((pid, code, sig)))
        store.register_shell(10, "make", "")

        service.emit(10, DataEvent("done\n"))
        service.emit(10, ExitEvent(1, None))
        service.finish(10, 1)

        shell = store.get(10)
        assert shell.status == ShellStatus.EXITED
        assert shell.exit_code == 1
        assert shell.output == "done\n"
        assert exits == [(10, 1, None)]
        assert not store.has_subscription(10)
        assert 10 not in service.consumers
        assert store.running_count == 0

    def test_register_already_exited_process(self):
        service = FakeService()
        service.exited[10] = (0, None)
        exits = []
        store = ShellStore(service, on_shell_exit=lambda pid, code, sig: exits.append(pid))

        store.register_shell(10, "echo quick", "quick\n")

        assert store.get(10).status == ShellStatus.EXITED
        assert exits == [10]
        assert not store.has_subscription(10)

    def test_dismiss_running_kills_once(self):
        service = FakeService()
        store = ShellStore(service)
        store.register_shell(10, "sleep 100", "")

        assert store.dismiss_shell(10)
        assert not store.dismiss_shell(10)

        assert service.killed == [10]
        assert store.get(10) is None
        assert 10 not in service.consumers
        assert service.exit_callbacks.get(10) == []

    def test_dismiss_exited_does_not_kill(self):
        service = FakeService()
        store = ShellStore(service)
        store.register_shell(10, "true", "")
        service.finish(10, 0)

        assert store.dismiss_shell(10)
        assert service.killed == []

    def test_late_exit_after_dismiss_is_ignored(self):
        service = FakeService()
        exits = []
        store = ShellStore(service, on_shell_exit=lambda pid, code, sig: exits.append(pid))
        store.register_shell(10, "sleep 100", "")
        store.dismiss_shell(10)

        service.finish(10, None, "SIGTERM")
        assert exits == []

    def test_close_releases_everything(self):
        service = FakeService()
        store = ShellStore(service)
        store.register_shell(1, "a", "")
        store.register_shell(2, "b", "")

        store.close()

        assert service.consumers == {}
        assert not store.has_subscription(1)
        assert not store.has_subscription(2)
