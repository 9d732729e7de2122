"""Filesystem creation and UUID discovery.

Supported Filesystems:
    ext4:   root filesystem (mkfs.ext4 -F -L <label>)
    vfat:   FAT32 boot/EFI partition (mkfs.vfat -F 32 -n <label>)

The UUID of each new filesystem is read back with blkid. It is never
generated here and there is no label fallback: an empty UUID is fatal because
fstab and the boot environment both reference the root filesystem by UUID.
"""

from __future__ import annotations

from typing import Callable

from board_imager.logging import LoggerFactory
from board_imager.storage.commands import run_command, run_quietly
from board_imager.storage.exceptions import CommandError, FormatError, UUIDUnavailableError


log = LoggerFactory.for_format()

SUPPORTED_FILESYSTEMS = ("ext4", "vfat")


def build_mkfs_command(node: str, fs_type: str, label: str) -> list[str]:
    fs_type = fs_type.lower()
    if fs_type == "ext4":
        command = ["mkfs.ext4", "-F"]
        if label:
            command.extend(["-L", label])
    elif fs_type == "vfat":
        command = ["mkfs.vfat", "-F", "32"]
        if label:
            # FAT labels are at most 11 characters
            command.extend(["-n", label[:11]])
    else:
        raise FormatError(f"Unsupported filesystem type: {fs_type}", device=node)
    command.append(node)
    return command


class FilesystemFormatter:
    def __init__(self, runner: Callable = run_command):
        self.runner = runner

    def format(self, node: str, fs_type: str, label: str) -> None:
        """Create a filesystem on ``node``.

        Raises:
            FormatError: On an unsupported type or a non-zero mkfs exit
        """
        command = build_mkfs_command(node, fs_type, label)
        log.info(f"Formatting {node} as {fs_type} (label {label})")
        try:
            self.runner(command)
        except CommandError as error:
            log.error(f"Command: {' '.join(command)}")
            log.error(f"Error output: {error.stderr}")
            raise FormatError(
                f"mkfs failed on {node} with code {error.returncode}: {error.stderr}",
                device=node,
            ) from error
        log.debug(f"Successfully formatted {node} as {fs_type}")

    def read_uuid(self, node: str) -> str:
        """Read the filesystem UUID from on-disk metadata.

        Raises:
            UUIDUnavailableError: If blkid fails or reports nothing
        """
        run_quietly(self.runner, ["udevadm", "settle", "--timeout=10"])
        # -c /dev/null bypasses the blkid cache, which may predate mkfs
        result = self.runner(
            ["blkid", "-c", "/dev/null", "-s", "UUID", "-o", "value", node], check=False
        )
        if result.returncode != 0:
            raise UUIDUnavailableError(node, (result.stderr or "").strip() or f"blkid rc={result.returncode}")
        uuid = (result.stdout or "").strip()
        if not uuid:
            raise UUIDUnavailableError(node, "blkid returned an empty value")
        log.info(f"{node} has UUID {uuid}")
        return uuid
