"""Domain model for media provisioning.

Type-safe objects for the things the pipeline moves around: the target
media (file image or block device), the fixed partition layout, and the
boot assets fetched from upstream.
"""

from __future__ import annotations

import os
import re
import stat
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


# ==============================================================================
# Partition Layout
# ==============================================================================

SECTOR_SIZE = 512
FIRST_LBA = 2048

# The data partition start and the loop mount offset used for file media are
# the same quantity; everything reads it from here.
PARTITION_START_SECTOR = 32768
PARTITION_BYTE_OFFSET = PARTITION_START_SECTOR * SECTOR_SIZE

LINUX_FILESYSTEM_GUID = "0FC63DAF-8483-4772-8E79-3D69D8477DE4"
ROOTFS_LABEL = "rootfs"

SPL_OFFSET = 32768
SECONDARY_LOADER_OFFSET = 8388608


@dataclass(frozen=True)
class PartitionSpec:
    """The single data partition written to every media."""

    start_sector: int = PARTITION_START_SECTOR
    type_guid: str = LINUX_FILESYSTEM_GUID
    name: str = ROOTFS_LABEL
    first_lba: int = FIRST_LBA

    @property
    def byte_offset(self) -> int:
        return self.start_sector * SECTOR_SIZE

    def sfdisk_script(self) -> str:
        """Render the sfdisk input for a GPT label with this one partition."""
        return (
            "label: gpt\n"
            "unit: sectors\n"
            f"first-lba: {self.first_lba}\n"
            f"part1: start={self.start_sector}, type={self.type_guid}, "
            f"name={self.name}\n"
        )


ROOTFS_PARTITION = PartitionSpec()


# ==============================================================================
# Media Targets
# ==============================================================================

_SIZE_PATTERN = re.compile(r".*mmc_(\d+)([mg])\.img$")
_SIZE_UNITS = {"m": 1024**2, "g": 1024**3}


def parse_size_spec(name: str) -> int:
    """Parse the media size from an ``mmc_<N>[m|g].img`` file name.

    Args:
        name: Image file name or path (e.g. ``mmc_2g.img``)

    Returns:
        Size in bytes (``m`` = MiB, ``g`` = GiB)

    Raises:
        ValueError: If the name does not carry a size
    """
    match = _SIZE_PATTERN.match(Path(name).name)
    if not match:
        raise ValueError(
            f"cannot determine media size from {name!r}; "
            "expected a name like mmc_2g.img or mmc_512m.img"
        )
    magnitude, unit = match.groups()
    size = int(magnitude) * _SIZE_UNITS[unit]
    if size <= PARTITION_BYTE_OFFSET:
        raise ValueError(f"media size {size} is smaller than the partition offset")
    return size


class MediaTarget(ABC):
    """A storage medium the image is assembled onto."""

    path: Path

    @property
    @abstractmethod
    def is_block(self) -> bool:
        """True for raw block devices."""

    @abstractmethod
    def mount_args(self, partition_index: int = 1) -> list[str]:
        """Arguments for ``mount`` preceding the mountpoint."""

    @property
    def should_trim(self) -> bool:
        """Whether free space is trimmed before the media is closed."""
        return not self.is_block

    @property
    def can_compress(self) -> bool:
        return not self.is_block

    def __str__(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class FileMedia(MediaTarget):
    """A sparse image file, partitioned and formatted through a loop device."""

    path: Path
    size_bytes: int

    @property
    def is_block(self) -> bool:
        return False

    @property
    def compressed_path(self) -> Path:
        return self.path.with_name(self.path.name + ".xz")

    def mount_args(self, partition_index: int = 1) -> list[str]:
        # Only the first partition is reachable through a fixed offset.
        if partition_index != 1:
            raise ValueError("file media can only mount partition 1")
        return [
            "-n",
            "-o",
            f"loop,offset={PARTITION_BYTE_OFFSET}",
            str(self.path),
        ]


@dataclass(frozen=True)
class BlockMedia(MediaTarget):
    """A pre-existing raw block device (e.g. /dev/sdX, /dev/mmcblk1)."""

    path: Path

    @property
    def is_block(self) -> bool:
        return True

    @property
    def device_name(self) -> str:
        return self.path.name

    def partition_node(self, partition_index: int = 1) -> Path:
        """Resolve the kernel-exposed partition node via sysfs.

        ``/sys/block/sda/sda1`` -> ``/dev/sda1``,
        ``/sys/block/mmcblk1/mmcblk1p1`` -> ``/dev/mmcblk1p1``.
        """
        name = self.device_name
        sys_dir = Path("/sys/block") / name
        matches = sorted(sys_dir.glob(f"{name}*{partition_index}"))
        if not matches:
            # Kernel has not exposed the node yet; fall back to the usual name
            suffix = "p" if name[-1].isdigit() else ""
            return Path("/dev") / f"{name}{suffix}{partition_index}"
        return Path("/dev") / matches[0].name

    def mount_args(self, partition_index: int = 1) -> list[str]:
        return ["-n", str(self.partition_node(partition_index))]


def is_block_device(path: Path) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except FileNotFoundError:
        return False


def media_target_from_path(path) -> MediaTarget:
    """Build the media variant for ``path`` by inspecting the filesystem."""
    path = Path(path)
    if is_block_device(path):
        return BlockMedia(path=path)
    return FileMedia(path=path, size_bytes=parse_size_spec(path.name))


def existing_media_target(path) -> MediaTarget:
    """Build the media variant for an artifact that is already on disk.

    The size of an existing image is read from the file, so any name is
    accepted.
    """
    path = Path(path)
    if is_block_device(path):
        return BlockMedia(path=path)
    return FileMedia(path=path, size_bytes=path.stat().st_size)


# ==============================================================================
# Boot Assets
# ==============================================================================


class AssetKind(Enum):
    SPL = "spl"
    SECONDARY_LOADER = "secondary_loader"
    DEVICE_TREE = "device_tree"
    FIRMWARE_ARCHIVE = "firmware_archive"


@dataclass(frozen=True)
class BootAsset:
    """A remote artifact the image is assembled from."""

    kind: AssetKind
    url: str
    sha256: str | None = None

    @property
    def filename(self) -> str:
        return self.url.rstrip("/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class CacheEntry:
    """An artifact present in the local download cache."""

    url: str
    local_path: Path
    expected_sha256: str | None = None


@dataclass(frozen=True)
class Account:
    """Primary login account created in the target."""

    name: str
    password: str


@dataclass(frozen=True)
class RootfsBuildState:
    """Location of the cached debootstrap root and its completion marker."""

    cache_dir: Path

    @property
    def root_dir(self) -> Path:
        return self.cache_dir / "debootstrap"

    @property
    def built_marker(self) -> Path:
        return self.cache_dir / "debootstrap.built"

    @property
    def package_cache_dir(self) -> Path:
        return self.cache_dir / "var" / "cache"

    @property
    def package_lists_dir(self) -> Path:
        return self.cache_dir / "var" / "lib" / "apt" / "lists"

    def is_built(self) -> bool:
        return self.built_marker.exists()
