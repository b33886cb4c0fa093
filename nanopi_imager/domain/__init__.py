"""Domain models for media provisioning.

This package contains the type-safe objects shared across the pipeline:
media targets, the fixed partition layout and the boot assets.
"""

from __future__ import annotations

from .models import (
    PARTITION_BYTE_OFFSET,
    PARTITION_START_SECTOR,
    ROOTFS_PARTITION,
    SECONDARY_LOADER_OFFSET,
    SECTOR_SIZE,
    SPL_OFFSET,
    Account,
    AssetKind,
    BlockMedia,
    BootAsset,
    CacheEntry,
    FileMedia,
    MediaTarget,
    PartitionSpec,
    RootfsBuildState,
    existing_media_target,
    media_target_from_path,
    parse_size_spec,
)


__all__ = [
    "PARTITION_BYTE_OFFSET",
    "PARTITION_START_SECTOR",
    "ROOTFS_PARTITION",
    "SECONDARY_LOADER_OFFSET",
    "SECTOR_SIZE",
    "SPL_OFFSET",
    "Account",
    "AssetKind",
    "BlockMedia",
    "BootAsset",
    "CacheEntry",
    "FileMedia",
    "MediaTarget",
    "PartitionSpec",
    "RootfsBuildState",
    "existing_media_target",
    "media_target_from_path",
    "parse_size_spec",
]
