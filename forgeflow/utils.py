"""Shared utility functions for forgeflow.

Provides async command execution with a bounded timeout, atomic JSON I/O,
name and duration formatting, and Rich-based console reporting used by the
orchestrator and the CLI.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import signal
import stat
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.rule import Rule
from rich.table import Table

console = Console()
err_console = Console(stderr=True)


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Async command execution
# ---------------------------------------------------------------------------


class CommandStatus(str, Enum):
    """Outcome category of an external command."""

    OK = "ok"
    TIMED_OUT = "timed-out"
    SPAWN_ERROR = "spawn-error"


@dataclass
class CommandResult:
    """Structured result of :func:`run_command`.

    ``status`` is ``OK`` whenever the process ran to completion, regardless
    of its exit code. ``TIMED_OUT`` and ``SPAWN_ERROR`` never carry a real
    exit code (it is ``-1``).
    """

    status: CommandStatus
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        """True when the command completed with exit code 0."""
        return self.status is CommandStatus.OK and self.exit_code == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


async def run_command(
    cmd: str | list[str],
    cwd: str | Path | None = None,
    timeout: float = 30,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command asynchronously with a hard deadline.

    Never raises for process-level problems: a command that cannot be
    started yields ``SPAWN_ERROR`` and one that exceeds *timeout* is killed
    and yields ``TIMED_OUT``.

    Args:
        cmd: Shell command string or list of arguments.
        cwd: Working directory for the child process.
        timeout: Maximum wall-clock seconds before the process is killed.
        env: Optional extra environment variables merged on top of ``os.environ``.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = {**os.environ, **env}

    try:
        if isinstance(cmd, list):
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                start_new_session=True,
            )
        else:
            process = await asyncio.create_subprocess_shell(
                cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                start_new_session=True,
            )
    except OSError as exc:
        return CommandResult(status=CommandStatus.SPAWN_ERROR, stderr=str(exc))

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError:
        # The child leads its own session; kill the whole group so forked
        # workers do not hold the pipes open past the deadline.
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await process.wait()
        shown = cmd if isinstance(cmd, str) else " ".join(cmd)
        return CommandResult(
            status=CommandStatus.TIMED_OUT,
            stderr=f"Command timed out after {timeout}s: {shown}",
        )

    return CommandResult(
        status=CommandStatus.OK,
        exit_code=process.returncode or 0,
        stdout=(stdout_bytes or b"").decode("utf-8", errors="replace").strip(),
        stderr=(stderr_bytes or b"").decode("utf-8", errors="replace").strip(),
    )


# ---------------------------------------------------------------------------
# String / name helpers
# ---------------------------------------------------------------------------


def sanitize_name(name: str) -> str:
    """Convert an arbitrary project name to a safe file/document id.

    Examples::

        sanitize_name("Hello World") -> "hello-world"
        sanitize_name("  2FA (TOTP)  ") -> "2fa-totp"
    """
    result = re.sub(r"[^a-zA-Z0-9_-]", "-", name.strip().lower())
    result = re.sub(r"-+", "-", result)
    return result.strip("-")


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


def load_json(path: str | Path) -> Any:
    """Load and parse a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    return json.loads(Path(path).read_text(encoding="utf-8"))


def dump_json(data: Any) -> str:
    """Serialise *data* the way every forgeflow artefact is written."""
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def _target_mode(path: Path) -> int:
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def write_text_atomic(path: str | Path, content: str) -> None:
    """Replace *path* with *content* so readers see either old or new bytes.

    The content is written to a temporary file in the same directory,
    flushed to disk and moved over the target with :func:`os.replace`.
    An existing file keeps its permission bits; a new one gets the usual
    umask-derived mode rather than ``mkstemp``'s owner-only ``0600``.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    mode = _target_mode(file_path)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{file_path.name}.", suffix=".tmp", dir=str(file_path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, file_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


async def save_json(data: Any, path: str | Path) -> None:
    """Atomically save *data* as pretty-printed JSON.

    The write runs in a thread-pool executor to avoid blocking the event
    loop on large documents.
    """
    content = dump_json(data)
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, write_text_atomic, Path(path), content)


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
        format_duration(3661.0) -> "1h 1m 1s"
    """
    if seconds < 0:
        return "0.0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    if hours > 0 or minutes > 0:
        parts.append(f"{int(secs)}s")
    else:
        parts.append(f"{secs:.1f}s")

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


PHASE_COLORS: dict[str, str] = {
    "functional": "bright_cyan",
    "technical": "bright_green",
    "architecture": "bright_yellow",
    "testing": "bright_magenta",
    "implementation": "bright_red",
    "review": "bright_blue",
    "documentation": "cyan",
    "deployment": "green",
}


def print_phase_header(number: int, name: str) -> None:
    """Print a full-width rule announcing a phase."""
    color = PHASE_COLORS.get(name, "white")
    console.print()
    console.print(
        Rule(
            f"[bold {color}] Phase {number}: {name.upper()} [/bold {color}]",
            style=color,
        )
    )


def print_summary_table(data: dict[str, Any], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)
    console.print()


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message to stderr; never silenced by :func:`set_quiet`."""
    err_console.print(f"[bold red]{message}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{message}[/bold yellow]")


def set_quiet(quiet: bool) -> None:
    """Silence (or restore) everything except :func:`print_error` output."""
    console.quiet = quiet
