"""Download cache for boot assets and firmware.

Artifacts are cached by file name under a distribution-scoped directory and
never re-downloaded once present. A download is written to a ``.part``
sibling and only renamed into place when complete, so an interrupted
transfer never leaves a cache entry that looks valid.

Verification computes SHA-256 with ``sha256sum`` and must pass before an
artifact is used to modify the target media.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from nanopi_imager.domain.models import AssetKind, BootAsset, CacheEntry
from nanopi_imager.logging import LoggerFactory, ThrottledLogger
from nanopi_imager.storage.commands import run_command
from nanopi_imager.storage.exceptions import (
    DownloadError,
    IntegrityError,
    MissingFileError,
    MissingToolError,
)


log = LoggerFactory.for_assets()
progress_log = ThrottledLogger(log.bind(tags=["assets", "progress"]), interval_seconds=2.0)

CHUNK_SIZE = 1024 * 1024
DEFAULT_TIMEOUT = 60.0
DEFAULT_USER_AGENT = "nanopi-imager/0.1"


def cache_path(cache_dir: Path, url: str) -> Path:
    return Path(cache_dir) / url.rstrip("/").rsplit("/", 1)[-1]


def _download(
    url: str,
    destination: Path,
    *,
    timeout: float,
    user_agent: str,
) -> None:
    partial = destination.with_name(destination.name + ".part")
    headers = {"User-Agent": user_agent}
    try:
        with requests.get(url, stream=True, headers=headers, timeout=timeout) as response:
            response.raise_for_status()
            total = int(response.headers.get("Content-Length") or 0)
            written = 0
            with open(partial, "wb") as handle:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    handle.write(chunk)
                    written += len(chunk)
                    if total:
                        progress_log.trace(
                            url,
                            f"{destination.name}: {written * 100 // total}%",
                        )
        partial.replace(destination)
    except requests.RequestException as error:
        partial.unlink(missing_ok=True)
        raise DownloadError(url, str(error)) from error
    except OSError as error:
        partial.unlink(missing_ok=True)
        raise DownloadError(url, str(error)) from error


def fetch(
    cache_dir: Path,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Path:
    """Return the cached copy of ``url``, downloading it if absent.

    Args:
        cache_dir: Cache directory (created if needed)
        url: Remote artifact; cached under its basename

    Returns:
        Path of the cached file

    Raises:
        DownloadError: If the file is still absent after the download
    """
    cache_dir = Path(cache_dir)
    cache_dir.mkdir(parents=True, exist_ok=True)
    local_path = cache_path(cache_dir, url)

    if local_path.is_file():
        log.trace(f"cache hit: {local_path}")
        return local_path

    log.info(f"downloading {url}")
    _download(url, local_path, timeout=timeout, user_agent=user_agent)

    if not local_path.is_file():
        raise DownloadError(url, "file missing after download")
    log.debug(f"cached {url} at {local_path}")
    return local_path


def compute_sha256(path: Path) -> str:
    """Compute the SHA-256 hex digest of a file with ``sha256sum``."""
    if not Path(path).is_file():
        raise MissingFileError(path)
    if shutil.which("sha256sum") is None:
        raise MissingToolError(["sha256sum"])
    output = run_command(["sha256sum", str(path)], log_output=False).stdout
    return output.split()[0] if output else ""


def verify(path: Path, expected_hex: str) -> None:
    """Compare the file's SHA-256 to ``expected_hex`` (case-insensitive).

    Raises:
        MissingFileError: If the file does not exist
        IntegrityError: On digest mismatch
    """
    actual = compute_sha256(path)
    if actual.lower() != expected_hex.strip().lower():
        log.error(f"invalid hash for {path}")
        raise IntegrityError(path, expected_hex, actual)
    log.debug(f"verified sha256 of {path}")


@dataclass(frozen=True)
class FetchedAssets:
    """Verified local copies of every boot asset for one run."""

    firmware_archive: CacheEntry
    spl: CacheEntry
    secondary_loader: CacheEntry
    device_tree: CacheEntry

    def get(self, kind: AssetKind) -> CacheEntry:
        return {
            AssetKind.FIRMWARE_ARCHIVE: self.firmware_archive,
            AssetKind.SPL: self.spl,
            AssetKind.SECONDARY_LOADER: self.secondary_loader,
            AssetKind.DEVICE_TREE: self.device_tree,
        }[kind]


def fetch_asset(
    cache_dir: Path,
    asset: BootAsset,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = DEFAULT_USER_AGENT,
) -> CacheEntry:
    """Fetch one asset and verify it when a digest is known."""
    local_path = fetch(cache_dir, asset.url, timeout=timeout, user_agent=user_agent)
    if asset.sha256:
        verify(local_path, asset.sha256)
    return CacheEntry(url=asset.url, local_path=local_path, expected_sha256=asset.sha256)


def fetch_assets(
    cache_dir: Path,
    assets: tuple[BootAsset, ...],
    *,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: Optional[str] = None,
) -> FetchedAssets:
    """Fetch and verify all boot assets before any media is touched."""
    entries = {
        asset.kind: fetch_asset(
            cache_dir,
            asset,
            timeout=timeout,
            user_agent=user_agent or DEFAULT_USER_AGENT,
        )
        for asset in assets
    }
    for kind in AssetKind:
        if kind not in entries:
            raise DownloadError(kind.value, "no url configured")
        if not entries[kind].local_path.is_file():
            raise MissingFileError(entries[kind].local_path)
    return FetchedAssets(
        firmware_archive=entries[AssetKind.FIRMWARE_ARCHIVE],
        spl=entries[AssetKind.SPL],
        secondary_loader=entries[AssetKind.SECONDARY_LOADER],
        device_tree=entries[AssetKind.DEVICE_TREE],
    )


def clean_caches(workdir: Path) -> list[Path]:
    """Remove every ``cache.*`` directory under ``workdir``."""
    removed = []
    for cache_dir in sorted(Path(workdir).glob("cache.*")):
        if cache_dir.is_dir():
            shutil.rmtree(cache_dir)
            removed.append(cache_dir)
            log.info(f"removed {cache_dir}")
    return removed
