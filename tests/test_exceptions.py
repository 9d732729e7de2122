"""Tests for storage exception classes."""

import pytest

from board_imager.storage.exceptions import (
    ChrootExecutionError,
    CommandError,
    FormatError,
    ImageBuildError,
    InvalidLayoutError,
    LedgerError,
    LoopDeviceError,
    MissingToolError,
    MountError,
    PartitionError,
    PartitionTimeoutError,
    PatchVerificationError,
    PopulationError,
    ResourceBusyError,
    UUIDUnavailableError,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    @pytest.mark.parametrize(
        "error",
        [
            CommandError(["parted"], 1),
            MissingToolError(["kpartx"]),
            LoopDeviceError("x"),
            PartitionError("x"),
            FormatError("x"),
            UUIDUnavailableError("/dev/mapper/loop0p1"),
            MountError("x"),
            PopulationError("x"),
            ChrootExecutionError("/mnt", 1),
            PatchVerificationError("/boot/env", "x"),
            LedgerError("x"),
        ],
    )
    def test_all_errors_share_base(self, error):
        assert isinstance(error, ImageBuildError)
        assert error.stage is None

    def test_resource_busy_is_loop_device_error(self):
        assert issubclass(ResourceBusyError, LoopDeviceError)

    def test_partition_subclasses(self):
        assert issubclass(PartitionTimeoutError, PartitionError)
        assert issubclass(InvalidLayoutError, PartitionError)


class TestResourceAttributes:
    """Errors name the resource they concern."""

    def test_resource_busy_error(self):
        error = ResourceBusyError("/srv/debian.img", "could not find any free loop device")
        assert error.image_path == "/srv/debian.img"
        assert error.resource == "/srv/debian.img"
        assert "free loop device" in str(error)

    def test_partition_timeout_error(self):
        error = PartitionTimeoutError("/dev/loop7", expected=2, found=1, attempts=10)
        assert error.device == "/dev/loop7"
        assert error.resource == "/dev/loop7"
        assert "expected 2, found 1" in str(error)

    def test_mount_error_prefers_path(self):
        error = MountError("boom", path="/mnt/rootfs", device="/dev/mapper/loop7p2")
        assert error.resource == "/mnt/rootfs"

    def test_command_error_message(self):
        error = CommandError(["mkfs.ext4", "-F", "/dev/mapper/loop7p1"], 1, "bad superblock")
        assert error.returncode == 1
        assert "mkfs.ext4 -F /dev/mapper/loop7p1" in str(error)
        assert "bad superblock" in str(error)

    def test_chroot_error(self):
        error = ChrootExecutionError("/mnt/rootfs", 100, "E: broken")
        assert error.returncode == 100
        assert error.resource == "/mnt/rootfs"

    def test_patch_verification_error(self):
        error = PatchVerificationError("/boot/env_k1-x.txt", "token missing")
        assert error.file_path == "/boot/env_k1-x.txt"
        assert "token missing" in str(error)

    def test_missing_tool_error(self):
        error = MissingToolError(["kpartx", "partprobe"])
        assert error.tools == ["kpartx", "partprobe"]
        assert "kpartx, partprobe" in str(error)

    def test_stage_can_be_attached(self):
        error = FormatError("mkfs failed", device="/dev/mapper/loop7p1")
        error.stage = "FORMATTED"
        assert error.stage == "FORMATTED"
        assert FormatError("other").stage is None
