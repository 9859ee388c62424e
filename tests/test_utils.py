"""Unit tests for utility functions (forgeflow.utils).

Tests cover:
- run_command (success, failure, timeout, spawn error, cwd, env vars)
- sanitize_name
- load_json / dump_json / write_text_atomic / save_json
- format_duration
- Rich output helpers
"""

from __future__ import annotations

import json
import os
import stat
import sys
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from forgeflow.utils import (
    PHASE_COLORS,
    CommandResult,
    CommandStatus,
    dump_json,
    format_duration,
    load_json,
    print_error,
    print_phase_header,
    print_success,
    print_summary_table,
    print_warning,
    run_command,
    sanitize_name,
    save_json,
    set_quiet,
    write_text_atomic,
)


# ---------------------------------------------------------------------------
# run_command
# ---------------------------------------------------------------------------


class TestRunCommand:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_successful_command_list(self):
        result = await run_command(["echo", "hello"])
        assert result.status is CommandStatus.OK
        assert result.exit_code == 0
        assert "hello" in result.stdout
        assert result.succeeded

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_successful_command_string(self):
        result = await run_command("echo hello")
        assert result.succeeded
        assert result.stdout == "hello"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_command_is_ok_status_with_exit_code(self):
        result = await run_command([sys.executable, "-c", "import sys; sys.exit(3)"])
        assert result.status is CommandStatus.OK
        assert result.exit_code == 3
        assert not result.succeeded

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_kills_and_reports(self):
        result = await run_command("sleep 5", timeout=0.2)
        assert result.status is CommandStatus.TIMED_OUT
        assert result.exit_code == -1
        assert "timed out" in result.stderr
        assert not result.succeeded

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_kills_forked_children(self):
        started = time.monotonic()
        result = await run_command("sleep 4; echo done", timeout=0.3)
        elapsed = time.monotonic() - started
        assert result.status is CommandStatus.TIMED_OUT
        assert "done" not in result.stdout
        assert elapsed < 1.5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_executable_is_spawn_error(self):
        result = await run_command(["forgeflow-no-such-binary-xyz"])
        assert result.status is CommandStatus.SPAWN_ERROR
        assert not result.succeeded

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_command_with_cwd(self, tmp_path: Path):
        (tmp_path / "marker.txt").write_text("x", encoding="utf-8")
        result = await run_command("ls", cwd=tmp_path)
        assert "marker.txt" in result.stdout

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_env_is_merged(self):
        result = await run_command(
            [sys.executable, "-c", "import os; print(os.environ['FORGEFLOW_TEST_VAR'])"],
            env={"FORGEFLOW_TEST_VAR": "value-42"},
        )
        assert result.stdout == "value-42"

    @pytest.mark.unit
    def test_as_dict(self):
        result = CommandResult(status=CommandStatus.OK, exit_code=0, stdout="a", stderr="")
        assert result.as_dict() == {"status": "ok", "exit_code": 0, "stdout": "a", "stderr": ""}


# ---------------------------------------------------------------------------
# sanitize_name
# ---------------------------------------------------------------------------


class TestSanitizeName:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Hello World", "hello-world"),
            ("  2FA (TOTP)  ", "2fa-totp"),
            ("already-clean", "already-clean"),
            ("a__b", "a__b"),
            ("!!!", ""),
        ],
    )
    def test_sanitize(self, raw: str, expected: str):
        assert sanitize_name(raw) == expected


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


class TestJsonIO:
    @pytest.mark.unit
    def test_dump_json_is_indented_with_trailing_newline(self):
        text = dump_json({"a": 1})
        assert text == '{\n  "a": 1\n}\n'

    @pytest.mark.unit
    def test_load_json_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_json(tmp_path / "missing.json")

    @pytest.mark.unit
    def test_load_json_invalid(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(json.JSONDecodeError):
            load_json(path)

    @pytest.mark.unit
    def test_write_text_atomic_creates_parents_and_leaves_no_temp(self, tmp_path: Path):
        target = tmp_path / "deep" / "file.txt"
        write_text_atomic(target, "content")
        assert target.read_text(encoding="utf-8") == "content"
        assert [p.name for p in target.parent.iterdir()] == ["file.txt"]

    @pytest.mark.unit
    def test_write_text_atomic_keeps_old_content_on_failure(self, tmp_path: Path):
        target = tmp_path / "file.txt"
        target.write_text("old", encoding="utf-8")
        with patch("forgeflow.utils.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                write_text_atomic(target, "new")
        assert target.read_text(encoding="utf-8") == "old"
        assert [p.name for p in tmp_path.iterdir()] == ["file.txt"]

    @pytest.mark.unit
    def test_write_text_atomic_keeps_existing_mode(self, tmp_path: Path):
        target = tmp_path / "file.txt"
        target.write_text("old", encoding="utf-8")
        os.chmod(target, 0o644)
        write_text_atomic(target, "new")
        assert stat.S_IMODE(target.stat().st_mode) == 0o644

    @pytest.mark.unit
    def test_write_text_atomic_new_file_follows_umask(self, tmp_path: Path):
        previous = os.umask(0o022)
        try:
            write_text_atomic(tmp_path / "file.txt", "content")
        finally:
            os.umask(previous)
        assert stat.S_IMODE((tmp_path / "file.txt").stat().st_mode) == 0o644

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_save_json_roundtrip(self, tmp_path: Path):
        path = tmp_path / "data.json"
        await save_json({"b": [1, 2], "a": "ü"}, path)
        assert load_json(path) == {"b": [1, 2], "a": "ü"}


# ---------------------------------------------------------------------------
# format_duration
# ---------------------------------------------------------------------------


class TestFormatDuration:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "seconds, expected",
        [(3.7, "3.7s"), (65.2, "1m 5s"), (3661.0, "1h 1m 1s"), (-1, "0.0s"), (0, "0.0s")],
    )
    def test_format(self, seconds: float, expected: str):
        assert format_duration(seconds) == expected


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


class TestRichHelpers:
    @pytest.mark.unit
    def test_phase_colors_cover_every_section(self):
        from forgeflow.document import SECTION_NAMES

        assert set(PHASE_COLORS) == set(SECTION_NAMES)

    @pytest.mark.unit
    def test_helpers_print_without_error(self, capsys):
        print_phase_header(1, "functional")
        print_summary_table({"Key": "Value"}, title="T")
        print_success("ok")
        print_warning("careful")
        print_error("bad")
        out = capsys.readouterr().out
        assert "FUNCTIONAL" in out
        assert "careful" in out

    @pytest.mark.unit
    def test_quiet_still_prints_errors(self, capsys):
        set_quiet(True)
        print_success("hidden")
        print_error("still shown")
        captured = capsys.readouterr()
        assert "hidden" not in captured.out
        assert "still shown" in captured.err
