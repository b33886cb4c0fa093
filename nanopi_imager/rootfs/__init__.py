"""Debian root filesystem build and target configuration."""
