"""External tool execution.

All tools the pipeline drives (sfdisk, mkfs.xfs, losetup, debootstrap,
rsync, xz...) go through ``run_command`` so tests can replace a single seam.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Optional, Sequence

from nanopi_imager.logging import LoggerFactory
from nanopi_imager.storage.exceptions import CommandError, MissingToolError


log = LoggerFactory.for_commands()
output_log = log.bind(tags=["command", "output"])


def _stringify(command: Sequence) -> list[str]:
    return [str(part) for part in command]


def run_command(
    command: Sequence,
    check: bool = True,
    input_text: Optional[str] = None,
    capture: bool = True,
    log_output: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command and return the completed process.

    Args:
        command: Argument list; ``Path`` items are converted to strings
        check: Raise ``CommandError`` on a non-zero exit status
        input_text: Text fed to the command's stdin
        capture: Capture stdout/stderr instead of streaming to the console
        log_output: Log captured output at DEBUG level

    Raises:
        CommandError: If ``check`` and the command fails
    """
    command = _stringify(command)
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        capture_output=capture,
    )
    if capture and (log_output or result.returncode != 0):
        if result.stdout:
            output_log.debug(f"stdout: {result.stdout.strip()}")
        if result.stderr:
            output_log.debug(f"stderr: {result.stderr.strip()}")
    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip() if capture else ""
        stdout = (result.stdout or "").strip() if capture else ""
        raise CommandError(command, result.returncode, stderr or stdout)
    log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_checked_command(command: Sequence, input_text: Optional[str] = None) -> str:
    """Run a command, raise ``CommandError`` if it fails, return its stdout."""
    return run_command(command, check=True, input_text=input_text).stdout or ""


def sync() -> None:
    """Flush filesystem buffers to durable storage."""
    run_command(["sync"], log_output=False)


def missing_tools(tools: Iterable[str]) -> list[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def require_tools(tools: Iterable[str]) -> None:
    """Raise ``MissingToolError`` listing every tool not found on PATH."""
    missing = missing_tools(tools)
    if missing:
        raise MissingToolError(missing)


def chroot_command(root: Path, *command: str) -> list[str]:
    return ["chroot", str(root), *command]
