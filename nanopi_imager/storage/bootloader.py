"""Bootloader installation and artifact finalization.

The RK3568 boot ROM reads the SPL (idbloader) from byte 32768 of the media
and the SPL loads the U-Boot ITB from byte 8388608. Both are written in
place: surrounding bytes (GPT, partition data) are left untouched and the
media is never truncated.
"""

from __future__ import annotations

import os
from pathlib import Path

from nanopi_imager.domain.models import (
    SECONDARY_LOADER_OFFSET,
    SPL_OFFSET,
    FileMedia,
    MediaTarget,
)
from nanopi_imager.logging import LoggerFactory
from nanopi_imager.storage.commands import run_checked_command
from nanopi_imager.storage.exceptions import BootloaderError, MissingFileError, UserAbort


log = LoggerFactory.for_media()

XZ_LEVEL = "-z8v"


def write_at_offset(media: Path, offset: int, payload: bytes) -> None:
    """Write ``payload`` into ``media`` at ``offset`` without truncating."""
    with open(media, "r+b") as handle:
        handle.seek(offset)
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())


def install_bootloader(media: Path, spl: Path, secondary: Path) -> None:
    """Write the SPL and secondary loader at their boot ROM offsets."""
    for stage in (spl, secondary):
        if not Path(stage).is_file():
            raise MissingFileError(stage)

    spl_bytes = Path(spl).read_bytes()
    secondary_bytes = Path(secondary).read_bytes()
    if SPL_OFFSET + len(spl_bytes) > SECONDARY_LOADER_OFFSET:
        raise BootloaderError(
            f"{spl} ({len(spl_bytes)} bytes) overlaps the secondary loader offset"
        )

    write_at_offset(media, SPL_OFFSET, spl_bytes)
    log.debug(f"wrote {len(spl_bytes)} bytes of {spl} at offset {SPL_OFFSET}")
    write_at_offset(media, SECONDARY_LOADER_OFFSET, secondary_bytes)
    log.debug(
        f"wrote {len(secondary_bytes)} bytes of {secondary} "
        f"at offset {SECONDARY_LOADER_OFFSET}"
    )


def confirm_compressed_overwrite(target: MediaTarget, compress: bool, confirm) -> None:
    """Ask before a run that would replace an existing compressed artifact.

    Raises:
        UserAbort: If the operator keeps the existing artifact (the default)
    """
    if not compress or not isinstance(target, FileMedia):
        return
    if target.compressed_path.exists():
        if not confirm(f"file {target.compressed_path} exists, overwrite?", False):
            raise UserAbort()


def compress_image(path: Path) -> Path:
    """Compress ``path`` with xz, replacing it with ``<path>.xz``."""
    run_checked_command(["xz", XZ_LEVEL, str(path)])
    return Path(str(path) + ".xz")


def finalize(target: MediaTarget, compress: bool) -> Path:
    """Compress the artifact if requested and log how to write it out."""
    if compress and target.can_compress:
        log.info("compressing image file...")
        artifact = compress_image(target.path)
        log.success("compressed image is now ready")
        log.info("copy image to target media:")
        log.info(f"  sudo sh -c 'xzcat {artifact} > /dev/sdX && sync'")
        return artifact

    if target.is_block:
        log.success("media is now ready")
    else:
        log.success("image is now ready")
        log.info("copy image to media:")
        log.info(f"  sudo sh -c 'cat {target.path} > /dev/sdX && sync'")
    return target.path
