"""Bootable Debian media builder for the FriendlyElec NanoPi R5S."""

from nanopi_imager.__version__ import __version__

__all__ = ["__version__"]
