"""Mount session for the target media.

A ``MountSession`` owns the working mountpoint for the duration of a build:
the root mount of the target's data partition and every bind mount nested
under it or under the debootstrap cache. Only one session may be live in
the process at a time.

Teardown order is fixed: bind mounts in reverse order of creation, then the
root mount, then the mountpoint directory.

Cleanup Guard:
    Opening a session installs a ``CleanupGuard``: an ``atexit`` hook plus
    handlers for SIGINT, SIGQUIT, SIGABRT and SIGTERM. Signals are converted
    into ``RunInterrupted`` so the normal unwind path runs. The guard fires
    at most once and is safe to fire against an already clean state. If the
    root mount is still active it asks before unmounting (default: yes).
    Errors during cleanup are logged and never retried. A clean ``close()``
    disarms the guard, so it lives exactly as long as the session.

Example:
    >>> with MountSession.open(ctx.mountpoint, target, ctx.confirm) as session:
    ...     populate(session.mountpoint)
    ...     session.close()
"""

from __future__ import annotations

import atexit
import contextlib
import os
import re
import shutil
import signal
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from nanopi_imager.domain.models import MediaTarget
from nanopi_imager.logging import LoggerFactory
from nanopi_imager.storage.commands import run_command
from nanopi_imager.storage.exceptions import (
    CommandError,
    MissingFileError,
    MountError,
    RunInterrupted,
    UnmountFailedError,
)


log = LoggerFactory.for_mount()

# Package-manager bind mounts that may be left under a mountpoint by a crash
KNOWN_BIND_PATHS = ("var/cache", "var/lib/apt/lists")

GUARDED_SIGNALS = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGQUIT", "SIGABRT", "SIGTERM")
    if hasattr(signal, name)
)

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")

_active_session: Optional[MountSession] = None


def _decode_mount_field(value: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), value)


def is_mountpoint(path: Path) -> bool:
    """Check whether ``path`` is currently a mount target."""
    target = os.path.realpath(path)
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and _decode_mount_field(parts[1]) == target:
                    return True
    except FileNotFoundError:
        return os.path.ismount(target)
    return False


def unmount(path: Path) -> None:
    """Unmount ``path``; raise ``UnmountFailedError`` if it stays mounted."""
    result = run_command(["umount", str(path)], check=False)
    if result.returncode != 0:
        raise UnmountFailedError(str(path), (result.stderr or "").strip())
    if is_mountpoint(path):
        raise UnmountFailedError(str(path), "still mounted after umount")
    log.debug(f"unmounted {path}")


def mounted_under(mountpoint: Path) -> list[Path]:
    """Return ``mountpoint`` and its known bind paths that are mount targets."""
    mountpoint = Path(mountpoint)
    candidates = [mountpoint / rel for rel in KNOWN_BIND_PATHS] + [mountpoint]
    return [path for path in candidates if is_mountpoint(path)]


def clear_stale_mounts(mountpoint: Path, bind_mounts: Iterable[Path] = ()) -> None:
    """Unmount leftovers at ``mountpoint``, bind mounts before the parent."""
    candidates = list(bind_mounts) + [mountpoint / rel for rel in KNOWN_BIND_PATHS]
    for bind in candidates:
        if is_mountpoint(bind):
            log.info(f"unmounting stale bind mount {bind}")
            unmount(bind)
    if is_mountpoint(mountpoint):
        log.info(f"unmounting stale mount {mountpoint}")
        unmount(mountpoint)


def active_session() -> Optional[MountSession]:
    return _active_session


class CleanupGuard:
    """Process-wide scope guard over a mount session."""

    def __init__(
        self,
        session: MountSession,
        confirm: Callable[[str, bool], bool],
    ):
        self.session = session
        self.confirm = confirm
        self.fired = False
        self.installed = False
        self._previous_handlers: dict[int, object] = {}

    def install(self, handle_signals: bool = True) -> None:
        if self.installed:
            return
        atexit.register(self.fire)
        if handle_signals:
            for signum in GUARDED_SIGNALS:
                self._previous_handlers[signum] = signal.signal(
                    signum, self._handle_signal
                )
        self.installed = True

    def _handle_signal(self, signum, _frame) -> None:
        log.warning(f"received signal {signum}; cleaning up before exit")
        raise RunInterrupted(signum)

    def _restore_handlers(self) -> None:
        while self._previous_handlers:
            signum, handler = self._previous_handlers.popitem()
            with contextlib.suppress(ValueError, TypeError):
                signal.signal(signum, handler)

    def disarm(self) -> None:
        """Leave whatever is mounted in place and never fire."""
        self.fired = True
        if self.installed:
            atexit.unregister(self.fire)
            self._restore_handlers()
            self.installed = False

    def fire(self) -> None:
        if self.fired:
            return
        self.fired = True
        try:
            self._cleanup()
        except Exception as error:
            log.error(f"cleanup of {self.session.mountpoint} failed: {error}")
        finally:
            self._restore_handlers()
            if self.installed:
                atexit.unregister(self.fire)
                self.installed = False
            self.session._release()

    def _cleanup(self) -> None:
        session = self.session
        mountpoint = session.mountpoint

        for bind in list(reversed(session.active_bind_mounts)):
            if is_mountpoint(bind):
                log.info(f"unmounting {bind}")
                unmount(bind)
            session.active_bind_mounts.remove(bind)

        if not is_mountpoint(mountpoint):
            with contextlib.suppress(OSError):
                if mountpoint.is_dir() and not any(mountpoint.iterdir()):
                    mountpoint.rmdir()
            return

        for rel in KNOWN_BIND_PATHS:
            if is_mountpoint(mountpoint / rel):
                unmount(mountpoint / rel)

        if self.confirm(f"{mountpoint} is still mounted, unmount?", True):
            log.info(f"unmounting {mountpoint}")
            unmount(mountpoint)
            run_command(["sync"], check=False, log_output=False)
            shutil.rmtree(mountpoint, ignore_errors=True)


class MountSession:
    """The live mount of a target's data partition."""

    def __init__(self, mountpoint: Path, source: MediaTarget):
        self.mountpoint = Path(mountpoint)
        self.source = source
        self.active_bind_mounts: list[Path] = []
        self.guard: Optional[CleanupGuard] = None
        self.closed = False

    @classmethod
    def open(
        cls,
        mountpoint: Path,
        target: MediaTarget,
        confirm: Callable[[str, bool], bool],
        *,
        partition_index: int = 1,
        handle_signals: bool = True,
    ) -> MountSession:
        """Mount ``target``'s data partition at ``mountpoint``.

        Raises:
            MountError: If another session is live or the mount did not happen
            MissingFileError: If the media does not exist
        """
        global _active_session
        if _active_session is not None and not _active_session.closed:
            raise MountError(
                f"a mount session is already active at {_active_session.mountpoint}"
            )

        mountpoint = Path(mountpoint)
        if mountpoint.is_dir():
            clear_stale_mounts(mountpoint)
        else:
            mountpoint.mkdir(parents=True)

        if not target.path.exists():
            raise MissingFileError(target.path)

        session = cls(mountpoint, target)
        session.guard = CleanupGuard(session, confirm)
        session.guard.install(handle_signals=handle_signals)
        _active_session = session

        try:
            try:
                run_command(
                    ["mount", *target.mount_args(partition_index), str(mountpoint)]
                )
            except CommandError as error:
                raise MountError(f"failed to mount {target.path}: {error}") from error
            if not is_mountpoint(mountpoint):
                raise MountError(f"failed to mount {target.path} on {mountpoint}")
        except BaseException:
            session.guard.fire()
            raise

        log.info(f"media {target.path} partition {partition_index} mounted on {mountpoint}")
        return session

    def bind(self, source: Path, target: Path) -> None:
        """Bind-mount ``source`` at ``target`` and record it for teardown."""
        source = Path(source)
        target = Path(target)
        source.mkdir(parents=True, exist_ok=True)
        target.mkdir(parents=True, exist_ok=True)
        run_command(["mount", "-o", "bind", str(source), str(target)])
        self.active_bind_mounts.append(target)
        log.debug(f"bind mounted {source} on {target}")

    def unbind(self, target: Path) -> None:
        target = Path(target)
        if is_mountpoint(target):
            unmount(target)
        if target in self.active_bind_mounts:
            self.active_bind_mounts.remove(target)

    @contextlib.contextmanager
    def bound(self, pairs: Iterable[tuple[Path, Path]]) -> Iterator[None]:
        """Bind each ``(source, target)`` pair for the duration of the block."""
        targets = []
        try:
            for source, target in pairs:
                self.bind(source, target)
                targets.append(Path(target))
            yield
        finally:
            for target in reversed(targets):
                self.unbind(target)

    def close(self) -> None:
        """Tear down bind mounts, then the root mount, then the directory."""
        if self.closed:
            return
        for bind in list(reversed(self.active_bind_mounts)):
            self.unbind(bind)
        clear_stale_mounts(self.mountpoint)
        run_command(["sync"], log_output=False)
        shutil.rmtree(self.mountpoint, ignore_errors=True)
        log.info(f"unmounted and removed {self.mountpoint}")
        if self.guard is not None:
            self.guard.disarm()
        self._release()

    def detach(self) -> None:
        """End management without unmounting; the mount stays for the operator."""
        if self.guard is not None:
            self.guard.disarm()
        self._release()

    def _release(self) -> None:
        global _active_session
        self.closed = True
        if _active_session is self:
            _active_session = None

    def __enter__(self) -> MountSession:
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        if self.closed:
            return
        if exc_type is None:
            self.close()
        elif self.guard is not None:
            self.guard.fire()
