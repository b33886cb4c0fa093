"""Tests for app/context.py."""

import dataclasses

import pytest

from nanopi_imager.app import prompts
from nanopi_imager.app.context import BuildContext


def test_context_exposes_config_paths(run_config, tmp_path):
    ctx = BuildContext(config=run_config)

    assert ctx.mountpoint == tmp_path / "debian-root"
    assert ctx.cache_dir == tmp_path / "cache.bookworm"
    assert ctx.rootfs_state.root_dir == tmp_path / "cache.bookworm" / "debootstrap"
    assert ctx.confirm is prompts.confirm


def test_context_is_frozen(run_config):
    ctx = BuildContext(config=run_config)

    with pytest.raises(dataclasses.FrozenInstanceError):
        ctx.config = run_config
