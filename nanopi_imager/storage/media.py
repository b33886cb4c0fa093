"""Media preparation: image creation, partitioning and formatting.

This module turns a ``MediaTarget`` into a GPT-labelled medium with a single
XFS data partition named ``rootfs``.

Partitioning:
    - GPT label written by sfdisk, first usable LBA 2048
    - One partition starting at sector 32768 (16 MiB), Linux filesystem type
    - The space before the partition holds the bootloader stages

Formatting:
    block:  the kernel-exposed partition node (/dev/sda1, /dev/mmcblk1p1) is
            formatted directly
    file:   the image is attached to a loop device with partition scanning,
            ``<loop>p1`` is formatted, then the loop device is detached. The
            loop handle is released on every exit path.

Every step is followed by ``sync``.

Example:
    >>> target = media_target_from_path("mmc_2g.img")
    >>> prepare_media(target)
    >>> partition_media(target.path)
    >>> format_media(target)
"""

from __future__ import annotations

import contextlib
import time
from functools import singledispatch
from pathlib import Path
from typing import Iterator

from nanopi_imager.domain.models import (
    ROOTFS_LABEL,
    ROOTFS_PARTITION,
    BlockMedia,
    FileMedia,
    MediaTarget,
    PartitionSpec,
)
from nanopi_imager.logging import LoggerFactory
from nanopi_imager.storage.commands import run_checked_command, run_command, sync
from nanopi_imager.storage.exceptions import MissingFileError, MountError


log = LoggerFactory.for_media()

PARTITION_NODE_TIMEOUT = 5.0
PARTITION_NODE_POLL = 0.25


def remove_media_artifacts(path: Path) -> list[Path]:
    """Remove ``path`` and every sibling sharing it as a prefix.

    For ``mmc_2g.img`` this also removes ``mmc_2g.img.xz``.
    """
    path = Path(path)
    removed = []
    parent = path.parent if str(path.parent) else Path(".")
    for candidate in sorted(parent.glob(path.name + "*")):
        if candidate.is_file() or candidate.is_symlink():
            candidate.unlink()
            removed.append(candidate)
            log.debug(f"removed stale artifact {candidate}")
    return removed


def create_image_file(path: Path, size_bytes: int) -> Path:
    """Create a sparse image file of ``size_bytes``, replacing stale artifacts."""
    path = Path(path)
    remove_media_artifacts(path)
    with open(path, "wb") as handle:
        handle.truncate(size_bytes)
    log.info(f"created sparse image {path} ({size_bytes} bytes)")
    return path


@singledispatch
def prepare_media(target: MediaTarget) -> None:
    """Make the target ready for partitioning."""
    raise TypeError(f"unsupported media target: {target!r}")


@prepare_media.register
def _(target: FileMedia) -> None:
    create_image_file(target.path, target.size_bytes)


@prepare_media.register
def _(target: BlockMedia) -> None:
    if not target.path.exists():
        raise MissingFileError(target.path)
    log.info(f"using block device {target.path}")


def partition_media(path: Path, spec: PartitionSpec = ROOTFS_PARTITION) -> None:
    """Write a GPT label holding exactly one partition described by ``spec``."""
    log.debug(f"writing GPT to {path}")
    run_checked_command(["sfdisk", str(path)], input_text=spec.sfdisk_script())
    sync()


def wait_for_node(node: Path, timeout: float = PARTITION_NODE_TIMEOUT) -> Path:
    """Wait for a device node to appear after a partition rescan."""
    deadline = time.monotonic() + timeout
    while True:
        if node.exists():
            return node
        if time.monotonic() >= deadline:
            raise MountError(f"partition node {node} did not appear")
        time.sleep(PARTITION_NODE_POLL)


@contextlib.contextmanager
def attached_loop_device(image: Path) -> Iterator[Path]:
    """Attach ``image`` to a free loop device with partition scanning.

    The device is detached when the block exits, including on error.
    """
    output = run_checked_command(["losetup", "--find", "--show", "--partscan", str(image)])
    device = output.strip()
    if not device:
        raise MountError(f"losetup did not return a loop device for {image}")
    log.debug(f"attached {image} to {device}")
    try:
        sync()
        yield Path(device)
    finally:
        result = run_command(["losetup", "-d", device], check=False)
        if result.returncode != 0:
            log.warning(f"failed to detach {device}: {(result.stderr or '').strip()}")
        else:
            log.debug(f"detached {device}")
        run_command(["sync"], check=False, log_output=False)


def loop_partition_node(loop_device: Path, partition_index: int = 1) -> Path:
    return Path(f"{loop_device}p{partition_index}")


def format_partition(node: Path, label: str = ROOTFS_LABEL) -> None:
    """Create an XFS filesystem on ``node``."""
    log.debug(f"formatting {node} as xfs (label {label})")
    run_checked_command(["mkfs.xfs", "-f", "-L", label, str(node)])
    sync()


@singledispatch
def format_media(target: MediaTarget, partition_index: int = 1) -> None:
    """Format the data partition of ``target`` with XFS."""
    raise TypeError(f"unsupported media target: {target!r}")


@format_media.register
def _(target: BlockMedia, partition_index: int = 1) -> None:
    node = target.partition_node(partition_index)
    wait_for_node(node)
    format_partition(node)


@format_media.register
def _(target: FileMedia, partition_index: int = 1) -> None:
    with attached_loop_device(target.path) as loop_device:
        node = wait_for_node(loop_partition_node(loop_device, partition_index))
        format_partition(node)
