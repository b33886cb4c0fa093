"""
Tests for nanopi_imager.config.settings module.

This test suite covers:
- Defaults when no settings file exists
- Merging a JSON settings file over defaults
- Corrupted settings files
- PI_* environment overrides
- RunConfig resolution of media, mountpoint and packages
- Boot asset url and digest overrides
"""

import json
from pathlib import Path

import pytest

from nanopi_imager.config import settings
from nanopi_imager.domain.models import AssetKind
from nanopi_imager.storage.exceptions import ConfigurationError


class TestLoadSettings:
    def test_defaults_when_no_file(self, tmp_path):
        values = settings.load_settings(tmp_path / "missing.json")

        assert values == settings.DEFAULT_SETTINGS
        assert values is not settings.DEFAULT_SETTINGS

    def test_file_merges_with_defaults(self, temp_settings_file):
        temp_settings_file.write_text(json.dumps({"distro": "trixie", "mountpoint": "/mnt/r5s"}))

        values = settings.load_settings(temp_settings_file)

        assert values["distro"] == "trixie"
        assert values["mountpoint"] == "/mnt/r5s"
        assert values["hostname"] == "nanopi-r5s-arm64"

    def test_corrupted_file_falls_back_to_defaults(self, temp_settings_file):
        temp_settings_file.write_text("{not json")

        assert settings.load_settings(temp_settings_file) == settings.DEFAULT_SETTINGS

    def test_non_object_json_ignored(self, temp_settings_file):
        temp_settings_file.write_text("[1, 2]")

        assert settings.load_settings(temp_settings_file) == settings.DEFAULT_SETTINGS

    def test_settings_path_from_module(self, temp_settings_file, monkeypatch):
        temp_settings_file.write_text(json.dumps({"hostname": "from-file"}))
        monkeypatch.setattr("nanopi_imager.config.settings.SETTINGS_PATH", temp_settings_file)

        assert settings.load_settings()["hostname"] == "from-file"


class TestEnvironment:
    def test_overrides(self):
        environ = {
            "PI_HOSTNAME": "r5s-lab",
            "PI_USERNAME": "pi",
            "PI_PASSWORD": "hunter2",
            "PI_EXTRA_PKGS": "htop,vim",
            "PI_SSH_KEY": "ssh-ed25519 AAAA",
        }

        values = settings.apply_environment(settings.DEFAULT_SETTINGS, environ)

        assert values["hostname"] == "r5s-lab"
        assert values["username"] == "pi"
        assert values["password"] == "hunter2"
        assert values["extra_packages"] == "htop,vim"
        assert values["ssh_key"] == "ssh-ed25519 AAAA"

    def test_empty_variables_ignored(self):
        values = settings.apply_environment(settings.DEFAULT_SETTINGS, {"PI_HOSTNAME": ""})

        assert values["hostname"] == "nanopi-r5s-arm64"


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, ()),
        ("", ()),
        ("htop", ("htop",)),
        ("htop, vim  tmux", ("htop", "vim", "tmux")),
    ],
)
def test_split_packages(value, expected):
    assert settings.split_packages(value) == expected


class TestRunConfig:
    def test_relative_paths_resolved_against_workdir(self, tmp_path):
        config = settings.RunConfig.from_settings(settings.DEFAULT_SETTINGS, workdir=tmp_path)

        assert config.media == tmp_path / "mmc_2g.img"
        assert config.mountpoint == tmp_path / "debian-root"
        assert config.cache_dir == tmp_path / "cache.bookworm"
        assert config.ssh_key is None

    def test_block_device_media_kept(self, tmp_path):
        config = settings.RunConfig.from_settings(
            settings.DEFAULT_SETTINGS, media="/dev/sdz", workdir=tmp_path
        )

        assert config.media == Path("/dev/sdz")

    def test_extra_packages_appended_once(self):
        config = settings.RunConfig(media=Path("mmc_2g.img"), extra_packages=("htop", "sudo"))

        assert config.packages[: len(settings.BASE_PACKAGES)] == settings.BASE_PACKAGES
        assert config.packages.count("sudo") == 1
        assert config.packages[-1] == "htop"

    def test_default_assets(self):
        config = settings.RunConfig(media=Path("mmc_2g.img"))
        by_kind = {asset.kind: asset for asset in config.assets}

        firmware = by_kind[AssetKind.FIRMWARE_ARCHIVE]
        assert firmware.url.endswith("linux-firmware-20250808.tar.xz")
        assert firmware.sha256 == settings.FIRMWARE_ARCHIVE_SHA256
        assert by_kind[AssetKind.SPL].url.endswith("idbloader-r5s.img")
        assert by_kind[AssetKind.SPL].sha256 is None
        assert by_kind[AssetKind.SECONDARY_LOADER].url.endswith("u-boot-r5s.itb")
        assert by_kind[AssetKind.DEVICE_TREE].url.endswith("rk3568-nanopi-r5s.dtb")

    def test_resolve_config(self, tmp_path, temp_settings_file):
        temp_settings_file.write_text(json.dumps({"hostname": "from-file"}))

        config = settings.resolve_config(
            compress=False,
            motd=True,
            workdir=tmp_path,
            environ={"PI_USERNAME": "pi"},
            settings_path=temp_settings_file,
        )

        assert config.hostname == "from-file"
        assert config.account.name == "pi"
        assert config.account.password == "debian"
        assert config.compress is False
        assert config.motd is True


class TestAssetOverrides:
    """Settings file ``assets`` table replacing urls and digests per kind."""

    def test_digest_added_for_loader(self, tmp_path, temp_settings_file):
        digest = "9f" * 32
        temp_settings_file.write_text(json.dumps({"assets": {"spl": {"sha256": digest}}}))

        config = settings.resolve_config(
            workdir=tmp_path, environ={}, settings_path=temp_settings_file
        )

        by_kind = {asset.kind: asset for asset in config.assets}
        assert by_kind[AssetKind.SPL].sha256 == digest
        assert by_kind[AssetKind.SPL].url.endswith("idbloader-r5s.img")
        assert by_kind[AssetKind.FIRMWARE_ARCHIVE].sha256 == settings.FIRMWARE_ARCHIVE_SHA256
        assert len(config.assets) == 4

    def test_url_replaced(self):
        assets = settings.assets_from_settings(
            {"device_tree": {"url": "https://mirror.example.com/rk3568-nanopi-r5s.dtb"}}
        )

        tree = next(asset for asset in assets if asset.kind is AssetKind.DEVICE_TREE)
        assert tree.url == "https://mirror.example.com/rk3568-nanopi-r5s.dtb"
        assert tree.filename == "rk3568-nanopi-r5s.dtb"

    def test_no_table_keeps_defaults(self):
        assert settings.assets_from_settings(None) == settings.default_assets()

    def test_unknown_kind(self):
        with pytest.raises(ConfigurationError, match="unknown asset 'kernel'"):
            settings.assets_from_settings({"kernel": {"url": "https://example.com/Image"}})

    def test_unknown_field(self):
        with pytest.raises(ConfigurationError, match="byte_offset"):
            settings.assets_from_settings({"spl": {"byte_offset": 0}})

    def test_entry_must_be_object(self):
        with pytest.raises(ConfigurationError):
            settings.assets_from_settings({"spl": "https://example.com/idbloader.img"})
