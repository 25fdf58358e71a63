"""Tests for text and system helpers."""

from __future__ import annotations

from unittest.mock import patch

from shellpilot.utils.system import (
    BASH_SHOPT_GUARD,
    check_project_dir,
    ensure_promptvars_disabled,
    get_shell_configuration,
)
from shellpilot.utils.text import OutputBuffer, is_binary, strip_ansi


class TestIsBinary:
    def test_text(self):
        assert not is_binary(b"hello world\n")

    def test_nul_byte(self):
        assert is_binary(b"abc\x00def")

    def test_nul_outside_sample(self):
        assert not is_binary(b"a" * 600 + b"\x00", sample_size=512)

    def test_empty(self):
        assert not is_binary(b"")
        assert not is_binary(None)


class TestStripAnsi:
    def test_colors_removed(self):
        assert strip_ansi("\x1b[31mred\x1b[0m plain") == "red plain"

    def test_plain_untouched(self):
        assert strip_ansi("just text") == "just text"


class TestOutputBuffer:
    def test_fits(self):
        buffer = OutputBuffer(10)
        buffer.append("abc")
        buffer.append("def")
        assert buffer.text == "abcdef"
        assert len(buffer) == 6
        assert not buffer.truncated

    def test_overflow_keeps_tail(self):
        buffer = OutputBuffer(5)
        buffer.append("abc")
        buffer.append("def")
        buffer.append("gh")
        assert buffer.text == "defgh"
        assert len(buffer) == 5
        assert buffer.truncated

    def test_chunk_larger_than_buffer(self):
        buffer = OutputBuffer(4)
        buffer.append("abc")
        buffer.append("0123456789")
        assert buffer.text == "6789"
        assert buffer.truncated

    def test_unbounded(self):
        buffer = OutputBuffer()
        for _ in range(1000):
            buffer.append("x" * 100)
        buffer.append("")
        assert len(buffer) == 100_000
        assert buffer.text == "x" * 100_000
        assert not buffer.truncated


class TestShellConfiguration:
    def test_posix_uses_bash(self):
        with patch("shellpilot.utils.system.is_windows", return_value=False):
            config = get_shell_configuration()
        assert config.executable == "bash"
        assert config.args_prefix == ("-c",)
        assert config.shell == "bash"

    def test_windows_uses_powershell(self, monkeypatch):
        monkeypatch.delenv("ComSpec", raising=False)
        with patch("shellpilot.utils.system.is_windows", return_value=True):
            config = get_shell_configuration()
        assert config.shell == "powershell"

    def test_guard_prefix(self):
        guarded = ensure_promptvars_disabled("echo $PS1", "bash")
        assert guarded.startswith(BASH_SHOPT_GUARD)
        assert guarded.endswith("echo $PS1")

    def test_guard_not_doubled(self):
        once = ensure_promptvars_disabled("ls", "bash")
        assert ensure_promptvars_disabled(once, "bash") == once

    def test_guard_skipped_for_powershell(self):
        assert ensure_promptvars_disabled("dir", "powershell") == "dir"


class TestCheckProjectDir:
    def test_existing(self, tmp_path):
        valid, resolved = check_project_dir(str(tmp_path))
        assert valid
        assert resolved == str(tmp_path.resolve())

    def test_missing(self, tmp_path):
        valid, message = check_project_dir(str(tmp_path / "nope"))
        assert not valid
        assert "not found" in message

    def test_file(self, tmp_path):
        f = tmp_path / "file.txt"
        f.write_text("x")
        valid, message = check_project_dir(str(f))
        assert not valid
        assert "Not a directory" in message
