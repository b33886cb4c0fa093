"""Tests for storage/bootloader.py - loader offsets and finalization."""

from pathlib import Path

import pytest

from nanopi_imager.domain.models import SECONDARY_LOADER_OFFSET, SPL_OFFSET, BlockMedia, FileMedia
from nanopi_imager.storage import bootloader
from nanopi_imager.storage.exceptions import BootloaderError, MissingFileError, UserAbort


MEDIA_SIZE = 9 * 1024 * 1024


@pytest.fixture
def media(tmp_path):
    path = tmp_path / "mmc_2g.img"
    with open(path, "wb") as handle:
        handle.truncate(MEDIA_SIZE)
    return path


@pytest.fixture
def loaders(tmp_path):
    spl = tmp_path / "idbloader-r5s.img"
    spl.write_bytes(b"\x3b\x8c\xdc\xfc" + b"\x11" * 1020)
    secondary = tmp_path / "u-boot-r5s.itb"
    secondary.write_bytes(b"\xd0\x0d\xfe\xed" + b"\x22" * 2044)
    return spl, secondary


class TestInstallBootloader:
    def test_writes_stages_at_offsets(self, media, loaders):
        spl, secondary = loaders

        bootloader.install_bootloader(media, spl, secondary)

        data = media.read_bytes()
        assert data[SPL_OFFSET : SPL_OFFSET + 1024] == spl.read_bytes()
        assert data[SECONDARY_LOADER_OFFSET : SECONDARY_LOADER_OFFSET + 2048] == secondary.read_bytes()

    def test_surrounding_bytes_untouched(self, media, loaders):
        spl, secondary = loaders
        with open(media, "r+b") as handle:
            handle.write(b"GPT!")

        bootloader.install_bootloader(media, spl, secondary)

        data = media.read_bytes()
        assert data[:4] == b"GPT!"
        assert data[SPL_OFFSET - 1] == 0
        assert data[SPL_OFFSET + 1024] == 0
        assert len(data) == MEDIA_SIZE

    def test_missing_stage(self, media, loaders, tmp_path):
        spl, _ = loaders

        with pytest.raises(MissingFileError):
            bootloader.install_bootloader(media, spl, tmp_path / "absent.itb")

    def test_oversized_spl_rejected(self, media, loaders, tmp_path):
        _, secondary = loaders
        huge = tmp_path / "huge.img"
        huge.write_bytes(b"\x01" * (SECONDARY_LOADER_OFFSET - SPL_OFFSET + 1))

        with pytest.raises(BootloaderError, match="overlaps"):
            bootloader.install_bootloader(media, huge, secondary)

        assert media.read_bytes().count(b"\x01") == 0


class TestConfirmCompressedOverwrite:
    def test_declined_overwrite_aborts(self, tmp_path):
        target = FileMedia(path=tmp_path / "mmc_2g.img", size_bytes=1)
        target.compressed_path.write_bytes(b"xz")
        asked = []

        def confirm(question, default):
            asked.append(default)
            return default

        with pytest.raises(UserAbort):
            bootloader.confirm_compressed_overwrite(target, True, confirm)

        assert asked == [False]

    def test_accepted_overwrite(self, tmp_path):
        target = FileMedia(path=tmp_path / "mmc_2g.img", size_bytes=1)
        target.compressed_path.write_bytes(b"xz")

        bootloader.confirm_compressed_overwrite(target, True, lambda question, default: True)

    def test_no_prompt_without_compression(self, tmp_path):
        target = FileMedia(path=tmp_path / "mmc_2g.img", size_bytes=1)
        target.compressed_path.write_bytes(b"xz")

        bootloader.confirm_compressed_overwrite(target, False, pytest.fail)

    def test_no_prompt_for_block_media(self):
        bootloader.confirm_compressed_overwrite(BlockMedia(path=Path("/dev/sdz")), True, pytest.fail)


class TestFinalize:
    def test_compresses_file_media(self, fake_runner, tmp_path):
        target = FileMedia(path=tmp_path / "mmc_2g.img", size_bytes=1)

        artifact = bootloader.finalize(target, compress=True)

        assert artifact == tmp_path / "mmc_2g.img.xz"
        assert fake_runner.calls == [["xz", "-z8v", str(target.path)]]

    def test_uncompressed_file_media(self, fake_runner, tmp_path):
        target = FileMedia(path=tmp_path / "mmc_2g.img", size_bytes=1)

        assert bootloader.finalize(target, compress=False) == target.path
        assert fake_runner.calls == []

    def test_block_media_never_compressed(self, fake_runner):
        target = BlockMedia(path=Path("/dev/sdz"))

        assert bootloader.finalize(target, compress=True) == Path("/dev/sdz")
        assert fake_runner.calls == []
