"""Tests for database module."""

from __future__ import annotations

import pytest

from shellpilot.storage import database
from shellpilot.storage.database import close_db, get_recent_commands, init_db, save_command


class TestDatabase:
    @pytest.mark.asyncio
    async def test_init_and_save(self, tmp_path):
        db_path = str(tmp_path / "test.db")
        await init_db(db_path)
        assert database.is_initialized()

        await save_command(
            command="echo hello",
            status="Success",
            result="hello",
            exit_code=0,
            pid=4242,
            execution_time_ms=50,
        )

        commands = await get_recent_commands(limit=5)
        assert len(commands) == 1
        assert commands[0]["command"] == "echo hello"
        assert commands[0]["exit_code"] == 0
        assert commands[0]["pid"] == 4242
        assert commands[0]["source"] == "foreground"

        await close_db()
        assert not database.is_initialized()

    @pytest.mark.asyncio
    async def test_multiple_commands_ordering(self, tmp_path):
        db_path = str(tmp_path / "test2.db")
        await init_db(db_path)

        for i in range(5):
            await save_command(
                command=f"cmd_{i}",
                status="Success",
                result=f"out_{i}",
                exit_code=0,
                pid=None,
                execution_time_ms=i * 10,
            )

        commands = await get_recent_commands(limit=3)
        assert len(commands) == 3
        # Most recent first
        assert commands[0]["command"] == "cmd_4"
        assert commands[2]["command"] == "cmd_2"

        await close_db()

    @pytest.mark.asyncio
    async def test_background_source(self, tmp_path):
        db_path = str(tmp_path / "test3.db")
        await init_db(db_path)

        await save_command(
            command="sleep 1",
            status="Cancelled",
            result="Command was cancelled.\n(Command produced no output)",
            exit_code=None,
            pid=99,
            execution_time_ms=10,
            source="background",
        )

        commands = await get_recent_commands(limit=1)
        assert commands[0]["source"] == "background"
        assert commands[0]["status"] == "Cancelled"

        await close_db()

    @pytest.mark.asyncio
    async def test_invalid_status_is_logged_not_raised(self, tmp_path):
        await init_db(str(tmp_path / "test4.db"))

        await save_command(
            command="x",
            status="Executing",
            result="",
            exit_code=None,
            pid=None,
            execution_time_ms=0,
        )

        assert await get_recent_commands(limit=5) == []
        await close_db()

    @pytest.mark.asyncio
    async def test_save_without_init_does_not_raise(self):
        await close_db()
        await save_command(
            command="echo",
            status="Success",
            result="",
            exit_code=0,
            pid=None,
            execution_time_ms=0,
        )
