"""Debian base root filesystem, built once per cache and copied into targets.

The base root is built with debootstrap under ``cache.<distro>/debootstrap``
and reused on every later run: a ``debootstrap.built`` marker is written
only after debootstrap succeeds, and its presence skips the build.

While debootstrap runs, ``var/cache`` and ``var/lib/apt/lists`` of the build
root are bind-mounted from ``cache.<distro>/var`` so downloaded packages and
indexes stay in the cache and never end up in the root snapshot. The binds
are owned by the active ``MountSession`` so the cleanup guard can undo them
after a crash.
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

from nanopi_imager.config.settings import EXCLUDED_PACKAGES
from nanopi_imager.domain.models import RootfsBuildState
from nanopi_imager.logging import LoggerFactory
from nanopi_imager.storage.commands import run_command
from nanopi_imager.storage.mount import MountSession


log = LoggerFactory.for_rootfs()


def debootstrap_command(
    root: Path,
    *,
    arch: str,
    distro: str,
    mirror: str,
    packages: Sequence[str],
    excluded: Sequence[str] = EXCLUDED_PACKAGES,
) -> list[str]:
    command = ["debootstrap", "--arch", arch]
    if packages:
        command += ["--include", ",".join(packages)]
    if excluded:
        command += ["--exclude", ",".join(excluded)]
    command += [distro, str(root), mirror]
    return command


def ensure_base(
    state: RootfsBuildState,
    session: MountSession,
    *,
    arch: str,
    distro: str,
    mirror: str,
    packages: Sequence[str],
    excluded: Sequence[str] = EXCLUDED_PACKAGES,
) -> Path:
    """Build the base root under ``state.root_dir`` unless already built.

    Returns:
        Path of the built root
    """
    root = state.root_dir
    if state.is_built():
        log.info(f"found built debian root at {root}")
        return root

    log.info(f"building debian root at {root}")
    root.mkdir(parents=True, exist_ok=True)
    binds = [
        (state.package_cache_dir, root / "var" / "cache"),
        (state.package_lists_dir, root / "var" / "lib" / "apt" / "lists"),
    ]
    with session.bound(binds):
        run_command(
            debootstrap_command(
                root,
                arch=arch,
                distro=distro,
                mirror=mirror,
                packages=packages,
                excluded=excluded,
            ),
            capture=False,
        )

    state.built_marker.write_text(f"{distro} {arch}\n", encoding="utf-8")
    log.success(f"debian root built at {root}")
    return root


def copy_into(built_root: Path, mountpoint: Path) -> None:
    """Copy the built root into the mounted target preserving ACLs and xattrs."""
    log.info(f"copying {built_root} to {mountpoint}")
    run_command(
        ["rsync", "-aAXH", f"{Path(built_root)}/", f"{Path(mountpoint)}/"],
        log_output=False,
    )
