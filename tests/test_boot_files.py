"""Tests for rootfs/boot_files.py - kernel hooks, firmware and device tree."""

import os
import stat

import pytest

from nanopi_imager.config.settings import FIRMWARE_DIRS
from nanopi_imager.rootfs import boot_files
from nanopi_imager.storage.exceptions import MissingFileError


def mode_of(path):
    return stat.S_IMODE(os.stat(path).st_mode)


def test_bundled_scripts_exist():
    for name in ("dtb_cp", "dtb_rm", "mk_extlinux", "rc.local"):
        assert boot_files.bundled_file(name).is_file()


def test_bundled_file_missing():
    with pytest.raises(MissingFileError):
        boot_files.bundled_file("no-such-script")


def test_install_kernel_hooks(tmp_path):
    boot_files.install_kernel_hooks(tmp_path)

    assert (tmp_path / "etc" / "kernel-img.conf").read_text() == (
        "link_in_boot = 1\ndo_symlinks = 0\n"
    )
    for name, relative in boot_files.KERNEL_HOOKS:
        assert mode_of(tmp_path / relative) == 0o754
    for link in boot_files.EXTLINUX_LINKS:
        assert os.readlink(tmp_path / link) == "../../../boot/mk_extlinux"
        assert (tmp_path / link).resolve() == (tmp_path / "boot" / "mk_extlinux").resolve()


def test_install_kernel_hooks_is_rerunnable(tmp_path):
    boot_files.install_kernel_hooks(tmp_path)
    boot_files.install_kernel_hooks(tmp_path)

    assert (tmp_path / "etc" / "kernel" / "postinst.d" / "update_extlinux").is_symlink()


def test_firmware_archive_root():
    assert boot_files.firmware_archive_root("/cache/linux-firmware-20250808.tar.xz") == (
        "linux-firmware-20250808"
    )


def test_install_firmware_extracts_selected_directories(fake_runner, tmp_path):
    archive = tmp_path / "linux-firmware-20250808.tar.xz"
    archive.write_bytes(b"xz")
    root = tmp_path / "root"

    destination = boot_files.install_firmware(root, archive, FIRMWARE_DIRS)

    assert destination == root / "usr" / "lib" / "firmware"
    assert destination.is_dir()
    command = fake_runner.commands("tar")[0]
    assert command[:7] == [
        "tar",
        "-C",
        str(destination),
        "--strip-components=1",
        "--wildcards",
        "-xaf",
        str(archive),
    ]
    assert command[7:] == [f"linux-firmware-20250808/{name}" for name in FIRMWARE_DIRS]


def test_install_firmware_missing_archive(fake_runner, tmp_path):
    with pytest.raises(MissingFileError):
        boot_files.install_firmware(tmp_path, tmp_path / "linux-firmware-1.tar.xz", ("rockchip",))

    assert fake_runner.calls == []


def test_install_device_tree(tmp_path):
    dtb = tmp_path / "rk3568-nanopi-r5s.dtb"
    dtb.write_bytes(b"\xd0\x0d\xfe\xed")
    root = tmp_path / "root"

    destination = boot_files.install_device_tree(root, dtb)

    assert destination == root / "boot" / "rk3568-nanopi-r5s.dtb"
    assert destination.read_bytes() == b"\xd0\x0d\xfe\xed"
    assert mode_of(destination) == 0o644
