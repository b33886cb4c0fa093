"""Boot support files, firmware and device tree for the target root.

The target boots through U-Boot's extlinux support: ``/boot/mk_extlinux``
writes ``extlinux.conf`` and is hooked into kernel postinst/postrm so
kernel upgrades keep it current.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Sequence

from nanopi_imager.logging import LoggerFactory
from nanopi_imager.rootfs import templates
from nanopi_imager.storage.commands import run_command
from nanopi_imager.storage.exceptions import MissingFileError


log = LoggerFactory.for_rootfs()

FILES_DIR = Path(__file__).resolve().parent / "files"

SCRIPT_MODE = 0o754
DATA_MODE = 0o644

FIRMWARE_DIR = Path("usr/lib/firmware")

# (bundled script, path in target)
KERNEL_HOOKS = (
    ("dtb_cp", Path("etc/kernel/postinst.d/dtb_cp")),
    ("dtb_rm", Path("etc/kernel/postrm.d/dtb_rm")),
    ("mk_extlinux", Path("boot/mk_extlinux")),
)
EXTLINUX_LINKS = (
    Path("etc/kernel/postinst.d/update_extlinux"),
    Path("etc/kernel/postrm.d/update_extlinux"),
)


def bundled_file(name: str) -> Path:
    path = FILES_DIR / name
    if not path.is_file():
        raise MissingFileError(path)
    return path


def install_file(source: Path, destination: Path, mode: int) -> None:
    """Copy ``source`` to ``destination`` creating parents, like ``install -D``."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, destination)
    os.chmod(destination, mode)
    log.debug(f"installed {source} -> {destination} ({oct(mode)})")


def force_symlink(target: str, link: Path) -> None:
    link.parent.mkdir(parents=True, exist_ok=True)
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(target)


def install_kernel_hooks(mountpoint: Path) -> None:
    (mountpoint / "etc").mkdir(parents=True, exist_ok=True)
    (mountpoint / "etc" / "kernel-img.conf").write_text(
        templates.kernel_img_conf(), encoding="utf-8"
    )
    for name, relative in KERNEL_HOOKS:
        install_file(bundled_file(name), mountpoint / relative, SCRIPT_MODE)
    for link in EXTLINUX_LINKS:
        force_symlink("../../../boot/mk_extlinux", mountpoint / link)


def firmware_archive_root(archive: Path) -> str:
    """Top-level directory inside a linux-firmware tarball.

    ``linux-firmware-20250808.tar.xz`` -> ``linux-firmware-20250808``
    """
    return Path(archive).name.split(".", 1)[0]


def install_firmware(mountpoint: Path, archive: Path, directories: Sequence[str]) -> Path:
    """Extract only ``directories`` of the firmware archive into the target."""
    if not Path(archive).is_file():
        raise MissingFileError(archive)
    destination = mountpoint / FIRMWARE_DIR
    destination.mkdir(parents=True, exist_ok=True)
    prefix = firmware_archive_root(archive)
    run_command(
        [
            "tar",
            "-C",
            str(destination),
            "--strip-components=1",
            "--wildcards",
            "-xaf",
            str(archive),
            *[f"{prefix}/{name}" for name in directories],
        ],
        log_output=False,
    )
    log.info(f"installed firmware: {' '.join(directories)}")
    return destination


def install_device_tree(mountpoint: Path, dtb: Path) -> Path:
    if not Path(dtb).is_file():
        raise MissingFileError(dtb)
    destination = mountpoint / "boot" / Path(dtb).name
    install_file(Path(dtb), destination, DATA_MODE)
    return destination


def prepare_boot_files(
    mountpoint: Path,
    *,
    firmware_archive: Path,
    device_tree: Path,
    firmware_dirs: Sequence[str],
) -> None:
    """Install kernel hooks, extlinux generator, firmware and device tree."""
    mountpoint = Path(mountpoint)
    install_kernel_hooks(mountpoint)
    install_firmware(mountpoint, firmware_archive, firmware_dirs)
    install_device_tree(mountpoint, device_tree)
