"""Provisioning pipeline and the two secondary entry paths.

``build`` runs the stages strictly in sequence:

    1. confirmations (existing image, existing compressed image)
    2. fetch and verify every boot asset
    3. create, partition and format the media
    4. open the mount session
    5. build (or reuse) the debian root and copy it in
    6. boot files, firmware and device tree
    7. post-install configuration
    8. close the session
    9. write the bootloader stages
    10. compress and report

Nothing touches the media before step 2 has verified every asset.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from nanopi_imager.app.context import BuildContext
from nanopi_imager.domain.models import (
    AssetKind,
    FileMedia,
    MediaTarget,
    existing_media_target,
    is_block_device,
    media_target_from_path,
)
from nanopi_imager.logging import LoggerFactory, operation_context
from nanopi_imager.rootfs.boot_files import prepare_boot_files
from nanopi_imager.rootfs.builder import copy_into, ensure_base
from nanopi_imager.rootfs.postprocess import post_process
from nanopi_imager.storage.assets import clean_caches, fetch_assets
from nanopi_imager.storage.bootloader import (
    confirm_compressed_overwrite,
    finalize,
    install_bootloader,
)
from nanopi_imager.storage.commands import run_checked_command
from nanopi_imager.storage.exceptions import (
    ConfigurationError,
    MountError,
    UserAbort,
)
from nanopi_imager.storage.media import (
    format_media,
    partition_media,
    prepare_media,
    remove_media_artifacts,
)
from nanopi_imager.storage.mount import MountSession, mounted_under
from nanopi_imager.storage.validation import validate_media_target


log = LoggerFactory.for_system()


def resolve_target(path: Path) -> MediaTarget:
    """Build the media variant for a build target; file names must carry a size."""
    try:
        return media_target_from_path(path)
    except ValueError as error:
        raise ConfigurationError(str(error)) from error


def confirm_image_overwrite(ctx: BuildContext, target: MediaTarget) -> None:
    """Ask before replacing an existing image file (default: no)."""
    if isinstance(target, FileMedia) and target.path.is_file():
        if not ctx.confirm(f"file {target.path} exists, overwrite?", False):
            raise UserAbort()


def build(ctx: BuildContext) -> Path:
    """Provision the configured media end to end.

    Returns:
        Path of the final artifact (``.img.xz``, ``.img`` or the block device)
    """
    config = ctx.config
    target = resolve_target(config.media)
    validate_media_target(target, ctx.mountpoint)
    compress = config.compress and target.can_compress

    confirm_image_overwrite(ctx, target)
    confirm_compressed_overwrite(target, compress, ctx.confirm)

    with operation_context("downloading files", cache=str(ctx.cache_dir)):
        assets = fetch_assets(
            ctx.cache_dir,
            config.assets,
            timeout=config.download_timeout,
            user_agent=config.user_agent,
        )

    with operation_context("preparing media", media=str(target)):
        prepare_media(target)
        partition_media(target.path)
        format_media(target)

    with MountSession.open(ctx.mountpoint, target, ctx.confirm) as session:
        with operation_context("building debian root", distro=config.distro):
            state = ctx.rootfs_state
            built_root = ensure_base(
                state,
                session,
                arch=config.arch,
                distro=config.distro,
                mirror=config.mirror,
                packages=config.packages,
            )
            copy_into(built_root, session.mountpoint)

        with operation_context("installing boot files"):
            prepare_boot_files(
                session.mountpoint,
                firmware_archive=assets.firmware_archive.local_path,
                device_tree=assets.device_tree.local_path,
                firmware_dirs=config.firmware_dirs,
            )

        with operation_context("configuring target", hostname=config.hostname):
            post_process(session.mountpoint, config, target)

        session.close()

    with operation_context("installing u-boot", media=str(target)):
        install_bootloader(
            target.path,
            assets.get(AssetKind.SPL).local_path,
            assets.get(AssetKind.SECONDARY_LOADER).local_path,
        )

    return finalize(target, compress)


def clean(ctx: BuildContext) -> list[Path]:
    """Remove caches, media artifacts and the mountpoint directory.

    Raises:
        MountError: If anything is still mounted at or under the mountpoint
    """
    config = ctx.config
    mounted = mounted_under(ctx.mountpoint)
    if mounted:
        raise MountError(
            f"{mounted[0]} is still mounted, unmount it before cleaning"
        )

    removed = clean_caches(config.workdir)
    if not is_block_device(config.media):
        removed += remove_media_artifacts(config.media)
    if ctx.mountpoint.is_dir():
        shutil.rmtree(ctx.mountpoint)
        removed.append(ctx.mountpoint)
    log.success("clean complete")
    return removed


def resolve_mount_image(ctx: BuildContext, image: Path | None) -> Path:
    """Pick the raw image to mount, decompressing an ``.img.xz`` on request."""
    if image is None:
        raise MountError("no image file specified")
    image = Path(image)
    if not image.is_file():
        raise MountError(f"file not found: {image}")
    if image.suffix != ".xz":
        return image

    raw = image.with_suffix("")
    if raw.is_file():
        log.info(f"compressed file {image} was specified but uncompressed file {raw} exists")
        if not ctx.confirm(f"mount {raw} instead?", True):
            raise UserAbort()
        return raw

    if not ctx.confirm(f"compressed file {image} was specified, decompress to mount?", True):
        raise UserAbort()
    run_checked_command(["xz", "-dk", str(image)])
    return raw


def mount_only(ctx: BuildContext, image: Path | None) -> MountSession:
    """Mount a built image for inspection and leave it mounted."""
    raw = resolve_mount_image(ctx, image)
    target = existing_media_target(raw)
    log.info(f"mounting file {raw}...")
    session = MountSession.open(ctx.mountpoint, target, ctx.confirm)
    session.detach()
    log.success(f"media mounted, use 'sudo umount {session.mountpoint}' to unmount")
    return session
