"""Run configuration for the image builder.

Values are resolved in three layers: built-in defaults, an optional JSON
settings file, then the ``PI_*`` environment variables. The result is frozen
into a ``RunConfig`` that is threaded through every stage of the pipeline.
"""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from nanopi_imager.domain.models import Account, AssetKind, BootAsset
from nanopi_imager.storage.exceptions import ConfigurationError


SETTINGS_PATH = Path(
    os.environ.get(
        "NANOPI_IMAGER_SETTINGS_PATH",
        Path.home() / ".config" / "nanopi-imager" / "settings.json",
    )
)

UBOOT_RELEASE_URL = "https://github.com/inindev/nanopi-r5/releases/download/v12.0.3"

FIRMWARE_ARCHIVE_URL = (
    "https://mirrors.edge.kernel.org/pub/linux/kernel/firmware/"
    "linux-firmware-20250808.tar.xz"
)
FIRMWARE_ARCHIVE_SHA256 = (
    "c029551b45a15926c9d7a5df1a0b540044064f19157c57fc11d91fd0aade837f"
)

# Only these vendor directories are extracted from the firmware tarball
FIRMWARE_DIRS = ("rockchip", "rtl_bt", "rtl_nic", "rtlwifi", "rtw88", "rtw89")

BASE_PACKAGES = (
    "linux-image-arm64",
    "dbus",
    "dhcpcd",
    "libpam-systemd",
    "openssh-server",
    "systemd-timesyncd",
    "xfsprogs",
    "rfkill",
    "wireless-regdb",
    "wpasupplicant",
    "curl",
    "pciutils",
    "sudo",
    "unzip",
    "wget",
    "xxd",
    "xz-utils",
    "zip",
    "zstd",
)
EXCLUDED_PACKAGES = ("isc-dhcp-client",)

REQUIRED_TOOLS = (
    "debootstrap",
    "xz",
    "mkfs.xfs",
    "sfdisk",
    "losetup",
    "mount",
    "umount",
    "findmnt",
    "blkid",
    "rsync",
    "tar",
    "chroot",
    "fstrim",
    "sha256sum",
    "sync",
)

# Mounting an existing image needs only these
MOUNT_TOOLS = ("mount", "umount", "xz")

DEFAULT_SETTINGS: dict[str, Any] = {
    "media": "mmc_2g.img",
    "distro": "bookworm",
    "arch": "arm64",
    "mirror": "https://deb.debian.org/debian/",
    "mountpoint": "debian-root",
    "hostname": "nanopi-r5s-arm64",
    "username": "debian",
    "password": "debian",
    "extra_packages": "",
    "ssh_key": "",
    "download_timeout_seconds": 60,
    "user_agent": "nanopi-imager/0.1",
}

# Environment variable -> settings key
ENVIRONMENT_OVERRIDES = {
    "PI_HOSTNAME": "hostname",
    "PI_USERNAME": "username",
    "PI_PASSWORD": "password",
    "PI_EXTRA_PKGS": "extra_packages",
    "PI_SSH_KEY": "ssh_key",
}


def load_settings(path: Path | None = None) -> dict[str, Any]:
    """Return defaults merged with the JSON settings file, if present."""
    values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return values
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return values
    if isinstance(data, dict):
        values.update(data)
    return values


def apply_environment(
    values: Mapping[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Overlay non-empty ``PI_*`` environment variables onto ``values``."""
    environ = os.environ if environ is None else environ
    merged = dict(values)
    for env_name, key in ENVIRONMENT_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            merged[key] = value
    return merged


def split_packages(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.replace(",", " ").split() if part.strip())


def default_assets() -> tuple[BootAsset, ...]:
    return (
        BootAsset(
            kind=AssetKind.FIRMWARE_ARCHIVE,
            url=FIRMWARE_ARCHIVE_URL,
            sha256=FIRMWARE_ARCHIVE_SHA256,
        ),
        BootAsset(
            kind=AssetKind.SPL,
            url=f"{UBOOT_RELEASE_URL}/idbloader-r5s.img",
        ),
        BootAsset(
            kind=AssetKind.SECONDARY_LOADER,
            url=f"{UBOOT_RELEASE_URL}/u-boot-r5s.itb",
        ),
        BootAsset(
            kind=AssetKind.DEVICE_TREE,
            url=f"{UBOOT_RELEASE_URL}/rk3568-nanopi-r5s.dtb",
        ),
    )


ASSET_OVERRIDE_FIELDS = ("url", "sha256")


def assets_from_settings(overrides: Mapping[str, Any] | None) -> tuple[BootAsset, ...]:
    """Apply the settings file's ``assets`` table to the default assets.

    The table is keyed by asset kind (``spl``, ``secondary_loader``,
    ``device_tree``, ``firmware_archive``) and may replace the ``url``
    and ``sha256`` of each, e.g.::

        {"assets": {"spl": {"sha256": "9f0c..."}}}

    Raises:
        ConfigurationError: On an unknown kind or field
    """
    assets = {asset.kind: asset for asset in default_assets()}
    for name, fields in (overrides or {}).items():
        try:
            kind = AssetKind(name)
        except ValueError as error:
            raise ConfigurationError(f"unknown asset {name!r} in settings") from error
        if not isinstance(fields, Mapping):
            raise ConfigurationError(f"settings for asset {name!r} must be an object")
        unknown = sorted(set(fields) - set(ASSET_OVERRIDE_FIELDS))
        if unknown:
            raise ConfigurationError(
                f"unknown fields for asset {name!r}: {', '.join(unknown)}"
            )
        assets[kind] = dataclasses.replace(assets[kind], **fields)
    return tuple(assets.values())


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration for one provisioning run."""

    media: Path
    distro: str = DEFAULT_SETTINGS["distro"]
    arch: str = DEFAULT_SETTINGS["arch"]
    mirror: str = DEFAULT_SETTINGS["mirror"]
    mountpoint: Path = Path(DEFAULT_SETTINGS["mountpoint"])
    hostname: str = DEFAULT_SETTINGS["hostname"]
    account: Account = Account(
        DEFAULT_SETTINGS["username"], DEFAULT_SETTINGS["password"]
    )
    extra_packages: tuple[str, ...] = ()
    ssh_key: str | None = None
    compress: bool = True
    motd: bool = False
    download_timeout: float = DEFAULT_SETTINGS["download_timeout_seconds"]
    user_agent: str = DEFAULT_SETTINGS["user_agent"]
    assets: tuple[BootAsset, ...] = field(default_factory=default_assets)
    firmware_dirs: tuple[str, ...] = FIRMWARE_DIRS
    workdir: Path = Path(".")

    @property
    def cache_dir(self) -> Path:
        """Distribution-scoped download and debootstrap cache."""
        return self.workdir / f"cache.{self.distro}"

    @property
    def packages(self) -> tuple[str, ...]:
        return BASE_PACKAGES + tuple(
            pkg for pkg in self.extra_packages if pkg not in BASE_PACKAGES
        )

    @classmethod
    def from_settings(
        cls,
        values: Mapping[str, Any],
        *,
        media: str | Path | None = None,
        compress: bool = True,
        motd: bool = False,
        workdir: Path | None = None,
    ) -> RunConfig:
        workdir = workdir or Path(".")
        media_path = Path(media or values["media"])
        if not media_path.is_absolute():
            media_path = workdir / media_path
        mountpoint = Path(values["mountpoint"])
        if not mountpoint.is_absolute():
            mountpoint = workdir / mountpoint
        return cls(
            media=media_path,
            distro=values["distro"],
            arch=values["arch"],
            mirror=values["mirror"],
            mountpoint=mountpoint,
            hostname=values["hostname"],
            account=Account(values["username"], values["password"]),
            extra_packages=split_packages(values.get("extra_packages")),
            ssh_key=values.get("ssh_key") or None,
            compress=compress,
            motd=motd,
            download_timeout=float(values["download_timeout_seconds"]),
            user_agent=values["user_agent"],
            assets=assets_from_settings(values.get("assets")),
            workdir=workdir,
        )


def resolve_config(
    *,
    media: str | Path | None = None,
    compress: bool = True,
    motd: bool = False,
    workdir: Path | None = None,
    environ: Mapping[str, str] | None = None,
    settings_path: Path | None = None,
) -> RunConfig:
    values = apply_environment(load_settings(settings_path), environ)
    return RunConfig.from_settings(
        values, media=media, compress=compress, motd=motd, workdir=workdir
    )
