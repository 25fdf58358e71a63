"""Platform shell detection and system utility checks."""

from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

BASH_SHOPT_OPTIONS = "promptvars nullglob extglob nocaseglob dotglob"
BASH_SHOPT_GUARD = f"shopt -u {BASH_SHOPT_OPTIONS};"


@dataclass(frozen=True)
class ShellConfiguration:
    executable: str
    args_prefix: tuple[str, ...]
    shell: str


def is_windows() -> bool:
    return sys.platform == "win32"


def get_shell_configuration() -> ShellConfiguration:
    """Pick the shell used to run command strings on this platform."""
    if is_windows():
        com_spec = os.environ.get("ComSpec")
        if com_spec and com_spec.lower().endswith(("powershell.exe", "pwsh.exe")):
            return ShellConfiguration(com_spec, ("-NoProfile", "-Command"), "powershell")
        return ShellConfiguration("powershell.exe", ("-NoProfile", "-Command"), "powershell")

    return ShellConfiguration("bash", ("-c",), "bash")


def ensure_promptvars_disabled(command: str, shell: str) -> str:
    """Prefix bash commands with a guard that turns off prompt expansion and globbing extras."""
    if shell != "bash":
        return command
    if command.lstrip().startswith(BASH_SHOPT_GUARD):
        return command
    return f"{BASH_SHOPT_GUARD} {command}"


def check_shell() -> tuple[bool, str]:
    """Check that the platform shell is available and return its path."""
    configuration = get_shell_configuration()
    resolved = shutil.which(configuration.executable)
    if not resolved:
        return False, f'Shell executable "{configuration.executable}" not found in PATH.'
    return True, resolved


def check_project_dir(path: str) -> tuple[bool, str]:
    """Validate a target directory path."""
    resolved = Path(path).expanduser().resolve()
    if not resolved.exists():
        return False, f"Directory not found: {resolved}"
    if not resolved.is_dir():
        return False, f"Not a directory: {resolved}"
    return True, str(resolved)
