"""Safety validation before the pipeline touches any media.

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, making error handling more explicit.

Example:
    from nanopi_imager.storage.validation import validate_build_environment

    validate_build_environment(REQUIRED_TOOLS)
"""

import os
from pathlib import Path
from typing import Iterable

from .commands import require_tools
from .exceptions import ConfigurationError, MissingFileError, PrivilegeError
from nanopi_imager.domain.models import BlockMedia, MediaTarget


def validate_root() -> None:
    """Raise ``PrivilegeError`` unless running as uid 0."""
    if os.geteuid() != 0:
        raise PrivilegeError()


def validate_media_target(target: MediaTarget, mountpoint: Path) -> None:
    """Check the media is usable as a build target.

    Raises:
        MissingFileError: If a block target does not exist
        ConfigurationError: If the media would live under the mountpoint
    """
    if isinstance(target, BlockMedia) and not target.path.exists():
        raise MissingFileError(target.path)

    media = Path(os.path.abspath(target.path))
    mount_root = Path(os.path.abspath(mountpoint))
    if media == mount_root or mount_root in media.parents:
        raise ConfigurationError(
            f"media {target.path} must not be inside the mountpoint {mountpoint}"
        )


def validate_build_environment(tools: Iterable[str]) -> None:
    """Perform the checks required before any build or mount.

    Raises:
        PrivilegeError: If not running as root
        MissingToolError: If a required tool is not installed
    """
    # 1. Root first, so the exit status does not depend on PATH contents
    validate_root()

    # 2. Every external tool the pipeline invokes
    require_tools(tools)
