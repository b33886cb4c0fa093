"""
Pytest configuration and shared fixtures for nanopi-imager tests.

External tools are never executed: every command goes through
``nanopi_imager.storage.commands.run_command`` which calls ``subprocess.run``,
and the ``fake_runner`` fixture replaces that single seam.
"""

import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from nanopi_imager.app.context import BuildContext
from nanopi_imager.config.settings import RunConfig
from nanopi_imager.domain.models import Account
from nanopi_imager.storage import mount


# ==============================================================================
# Command Runner Fixtures
# ==============================================================================


def tool_name(command: List[str]) -> str:
    """Name of the tool a command runs; chroot commands report the inner tool."""
    if command[0] == "chroot" and len(command) > 2:
        return Path(command[2]).name
    return Path(command[0]).name


class FakeRunner:
    """Stand-in for ``subprocess.run`` recording every command."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.handlers: Dict[str, Callable] = {}

    def __call__(self, command, input=None, text=True, capture_output=True):
        command = list(command)
        self.calls.append(command)
        self.inputs.append(input)
        handler = self.handlers.get(tool_name(command))
        if handler is not None:
            return handler(command)
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    def respond(self, tool: str, stdout: str = "", returncode: int = 0, stderr: str = ""):
        self.handlers[tool] = lambda command: subprocess.CompletedProcess(
            command, returncode, stdout=stdout, stderr=stderr
        )

    def fail(self, tool: str, stderr: str = "failed", returncode: int = 1):
        self.respond(tool, returncode=returncode, stderr=stderr)

    def on(self, tool: str, handler: Callable):
        self.handlers[tool] = handler

    def commands(self, tool: str) -> List[List[str]]:
        return [command for command in self.calls if tool_name(command) == tool]

    def tools(self) -> List[str]:
        return [tool_name(command) for command in self.calls]


@pytest.fixture
def fake_runner(mocker) -> FakeRunner:
    """
    Fixture replacing ``subprocess.run`` behind ``run_command``.

    Every command succeeds with empty output unless configured with
    ``respond``/``fail``/``on``.
    """
    runner = FakeRunner()
    mocker.patch("nanopi_imager.storage.commands.subprocess.run", side_effect=runner)
    return runner


# ==============================================================================
# Mount Table Fixtures
# ==============================================================================


class FakeMountTable:
    """In-memory mount table driven by ``mount``/``umount`` commands."""

    def __init__(self, runner: FakeRunner):
        self.mounted: List[Path] = []
        self.unmounted: List[Path] = []
        self.fail_mount = False
        runner.on("mount", self._mount)
        runner.on("umount", self._umount)

    def _mount(self, command):
        if self.fail_mount:
            return subprocess.CompletedProcess(command, 32, stdout="", stderr="wrong fs type")
        self.mounted.append(Path(command[-1]))
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    def _umount(self, command):
        target = Path(command[-1])
        if target not in self.mounted:
            return subprocess.CompletedProcess(command, 32, stdout="", stderr="not mounted")
        self.mounted.remove(target)
        self.unmounted.append(target)
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    def is_mounted(self, path) -> bool:
        return Path(path) in self.mounted


@pytest.fixture
def mount_table(fake_runner, mocker) -> FakeMountTable:
    """Fixture simulating the kernel mount table for mount session tests."""
    table = FakeMountTable(fake_runner)
    mocker.patch("nanopi_imager.storage.mount.is_mountpoint", side_effect=table.is_mounted)
    return table


# ==============================================================================
# Configuration Fixtures
# ==============================================================================


@pytest.fixture
def run_config(tmp_path) -> RunConfig:
    """Fixture providing a run configuration rooted in a temp directory."""
    return RunConfig(
        media=tmp_path / "mmc_2g.img",
        mountpoint=tmp_path / "debian-root",
        hostname="r5s-test",
        account=Account("pi", "secret"),
        workdir=tmp_path,
    )


@pytest.fixture
def confirm_answers():
    """Fixture recording prompts and answering with their default."""
    asked = []

    def confirm(question, default=False):
        asked.append((question, default))
        return default

    confirm.asked = asked
    return confirm


@pytest.fixture
def build_context(run_config, confirm_answers) -> BuildContext:
    return BuildContext(config=run_config, confirm=confirm_answers)


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    return tmp_path / "settings.json"


# ==============================================================================
# Global State
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_mount_session():
    """
    Auto-use fixture releasing any mount session a test left active.

    The guard is disarmed so no atexit hook or signal handler outlives the test.
    """
    yield
    session = mount.active_session()
    if session is not None:
        if session.guard is not None:
            session.guard.disarm()
        session._release()
