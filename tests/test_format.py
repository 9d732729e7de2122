"""Tests for storage/format.py - mkfs commands and UUID readback."""

import pytest

from conftest import ROOT_UUID, FakeRunner

from board_imager.storage.exceptions import FormatError, UUIDUnavailableError
from board_imager.storage.format import FilesystemFormatter, build_mkfs_command


class TestBuildMkfsCommand:
    def test_ext4(self):
        assert build_mkfs_command("/dev/mapper/loop0p2", "ext4", "debian-root") == [
            "mkfs.ext4", "-F", "-L", "debian-root", "/dev/mapper/loop0p2",
        ]

    def test_vfat(self):
        assert build_mkfs_command("/dev/mapper/loop0p1", "vfat", "EFI") == [
            "mkfs.vfat", "-F", "32", "-n", "EFI", "/dev/mapper/loop0p1",
        ]

    def test_vfat_label_truncated(self):
        command = build_mkfs_command("/dev/mapper/loop0p1", "vfat", "BOOTPARTITION")
        assert command[command.index("-n") + 1] == "BOOTPARTITI"

    def test_unsupported_type(self):
        with pytest.raises(FormatError, match="Unsupported filesystem type"):
            build_mkfs_command("/dev/mapper/loop0p1", "btrfs", "root")


class TestFormat:
    def test_runs_mkfs(self):
        runner = FakeRunner()

        FilesystemFormatter(runner).format("/dev/mapper/loop0p2", "ext4", "debian-root")

        assert runner.calls == [["mkfs.ext4", "-F", "-L", "debian-root", "/dev/mapper/loop0p2"]]

    def test_mkfs_failure(self):
        runner = FakeRunner(lambda c: (1, "", "mkfs.ext4: Device size reported to be zero"))

        with pytest.raises(FormatError) as exc_info:
            FilesystemFormatter(runner).format("/dev/mapper/loop0p2", "ext4", "debian-root")

        assert exc_info.value.device == "/dev/mapper/loop0p2"
        assert "Device size reported to be zero" in str(exc_info.value)


class TestReadUuid:
    def test_reads_from_blkid(self):
        runner = FakeRunner(lambda c: (0, ROOT_UUID + "\n", "") if c[0] == "blkid" else (0, "", ""))

        uuid = FilesystemFormatter(runner).read_uuid("/dev/mapper/loop0p2")

        assert uuid == ROOT_UUID
        assert runner.commands_starting("blkid") == [
            ["blkid", "-c", "/dev/null", "-s", "UUID", "-o", "value", "/dev/mapper/loop0p2"]
        ]

    def test_empty_uuid_is_fatal(self):
        with pytest.raises(UUIDUnavailableError) as exc_info:
            FilesystemFormatter(FakeRunner()).read_uuid("/dev/mapper/loop0p2")

        assert exc_info.value.device == "/dev/mapper/loop0p2"

    def test_blkid_failure_is_fatal(self):
        runner = FakeRunner(lambda c: (2, "", "") if c[0] == "blkid" else (0, "", ""))

        with pytest.raises(UUIDUnavailableError, match="rc=2"):
            FilesystemFormatter(runner).read_uuid("/dev/mapper/loop0p2")
