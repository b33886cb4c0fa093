"""Custom exceptions for media provisioning.

Every fatal condition in the pipeline is an ``ImagerError`` carrying the
process exit status it maps to. ``main()`` is the only place that turns these
into an exit code.

Exception Hierarchy:
    ImagerError (base, exit 6)
        ├── MissingToolError         (exit 1)
        ├── DownloadError            (exit 2)
        ├── MountError               (exit 3)
        │   └── UnmountFailedError
        ├── MissingFileError         (exit 4)
        ├── IntegrityError           (exit 5)
        ├── PrivilegeError           (exit 9)
        ├── CommandError
        ├── ConfigurationError
        ├── AccountError
        ├── BootloaderError
        └── RunInterrupted           (exit 128 + signal)
    UserAbort                        (exit 0)

Usage:
    from nanopi_imager.storage.exceptions import IntegrityError

    if actual != expected:
        raise IntegrityError(path, expected, actual)
"""

from __future__ import annotations

from typing import Sequence


EXIT_OK = 0
EXIT_MISSING_TOOL = 1
EXIT_DOWNLOAD_FAILED = 2
EXIT_MOUNT_FAILED = 3
EXIT_MISSING_FILE = 4
EXIT_INTEGRITY_FAILED = 5
EXIT_PROVISIONING_FAILED = 6
EXIT_NOT_ROOT = 9


class ImagerError(Exception):
    """Base exception for all provisioning failures."""

    exit_status = EXIT_PROVISIONING_FAILED


class MissingToolError(ImagerError):
    """One or more required external tools are not installed."""

    exit_status = EXIT_MISSING_TOOL

    def __init__(self, tools: Sequence[str]):
        self.tools = list(tools)
        super().__init__(
            "this program requires the following tools to be available: "
            + " ".join(self.tools)
        )


class DownloadError(ImagerError):
    """A remote artifact could not be fetched into the cache."""

    exit_status = EXIT_DOWNLOAD_FAILED

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        self.reason = reason
        msg = f"unable to fetch {url}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MountError(ImagerError):
    """The target media could not be mounted."""

    exit_status = EXIT_MOUNT_FAILED


class UnmountFailedError(MountError):
    """Failed to unmount a mountpoint."""

    def __init__(self, mountpoint: str, reason: str = ""):
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"failed to unmount {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MissingFileError(ImagerError):
    """A file the pipeline expects to exist is absent."""

    exit_status = EXIT_MISSING_FILE

    def __init__(self, path):
        self.path = str(path)
        super().__init__(f"file not found: {path}")


class IntegrityError(ImagerError):
    """Content digest does not match the expected value."""

    exit_status = EXIT_INTEGRITY_FAILED

    def __init__(self, path, expected: str, actual: str):
        self.path = str(path)
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"invalid hash for {path}: expected {expected}, got {actual}"
        )


class PrivilegeError(ImagerError):
    """The process is not running with superuser privileges."""

    exit_status = EXIT_NOT_ROOT

    def __init__(self, message: str = "this program must be run as root"):
        super().__init__(message)


class CommandError(ImagerError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, message: str = ""):
        self.command = list(command)
        self.returncode = returncode
        detail = message or "Command failed"
        super().__init__(
            f"Command failed ({' '.join(self.command)}) rc={returncode}: {detail}"
        )


class ConfigurationError(ImagerError):
    """Run configuration is invalid (bad media name, missing value...)."""


class AccountError(ImagerError):
    """The primary user account could not be created in the target."""

    def __init__(self, account: str, reason: str):
        self.account = account
        self.reason = reason
        super().__init__(f"failed to create account {account}: {reason}")


class BootloaderError(ImagerError):
    """A loader stage cannot be placed at its boot ROM offset."""


class RunInterrupted(ImagerError):
    """The run was interrupted by a termination signal."""

    def __init__(self, signum: int):
        self.signum = signum
        self.exit_status = 128 + signum
        super().__init__(f"interrupted by signal {signum}")


class UserAbort(Exception):
    """The operator declined a confirmation; a clean, non-error exit."""

    exit_status = EXIT_OK
