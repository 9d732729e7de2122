"""Partition layout planning and partition table writing.

Supported Schemes:
    single-root:     one ext4 partition spanning 0%..100%
    boot-plus-root:  FAT32 boot/EFI 0%..256MiB, then ext4 root 256MiB..100%

Writing a layout:
    1. parted mktable msdos
    2. one parted mkpart per layout entry, in order
    3. ask the kernel to reread the table (partprobe, then blockdev
       --rereadpt, then partx -u as fallbacks)
    4. poll sysfs until the kernel exposes one sub-device per entry

Example:
    >>> planner = PartitionPlanner()
    >>> layout = planner.plan("boot-plus-root")
    >>> planner.apply("/dev/loop7", layout)
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Callable

from board_imager.domain.models import (
    PartitionLayout,
    PartitionRole,
    PartitionScheme,
    PartitionSpec,
)
from board_imager.logging import LoggerFactory
from board_imager.storage.commands import run_command, run_quietly
from board_imager.storage.exceptions import CommandError, PartitionError, PartitionTimeoutError


log = LoggerFactory.for_partition()

ROOT_LABEL = "debian-root"
BOOT_LABEL = "EFI"
BOOT_PARTITION_END = "256MiB"

DEFAULT_WAIT_ATTEMPTS = 10
DEFAULT_WAIT_INTERVAL = 1.0

SYS_BLOCK = Path("/sys/block")

REREAD_COMMANDS = (
    ("partprobe",),
    ("blockdev", "--rereadpt"),
    ("partx", "-u"),
)


def partition_node_name(device_name: str, index: int) -> str:
    """Kernel name of partition ``index`` on ``device_name`` (loop0 -> loop0p1)."""
    suffix = "p" if device_name[-1].isdigit() else ""
    return f"{device_name}{suffix}{index}"


class PartitionPlanner:
    def __init__(
        self,
        runner: Callable = run_command,
        wait_attempts: int = DEFAULT_WAIT_ATTEMPTS,
        wait_interval: float = DEFAULT_WAIT_INTERVAL,
        sys_block: Path = SYS_BLOCK,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner
        self.wait_attempts = wait_attempts
        self.wait_interval = wait_interval
        self.sys_block = Path(sys_block)
        self.sleep = sleep

    def plan(self, scheme) -> PartitionLayout:
        scheme = PartitionScheme.parse(scheme)
        if scheme is PartitionScheme.SINGLE_ROOT:
            partitions = (
                PartitionSpec(1, PartitionRole.ROOT, "ext4", "0%", "100%", ROOT_LABEL, "/"),
            )
        else:
            partitions = (
                PartitionSpec(
                    1, PartitionRole.BOOT, "vfat", "0%", BOOT_PARTITION_END, BOOT_LABEL, "/boot/efi"
                ),
                PartitionSpec(
                    2, PartitionRole.ROOT, "ext4", BOOT_PARTITION_END, "100%", ROOT_LABEL, "/"
                ),
            )
        layout = PartitionLayout(scheme=scheme, partitions=partitions)
        log.debug(f"Planned {scheme.value} layout with {len(layout)} partition(s)")
        return layout

    def apply(self, device_path: str, layout: PartitionLayout) -> None:
        """Write ``layout`` to ``device_path`` and wait for the kernel to see it.

        Raises:
            PartitionError: If parted fails
            PartitionTimeoutError: If the partition sub-devices never appear
        """
        log.info(f"Writing msdos partition table to {device_path}")
        self._parted(device_path, "mktable", "msdos")
        for spec in layout:
            log.debug(
                f"Creating partition {spec.index} ({spec.role.value}, {spec.fs_type}) "
                f"{spec.start}..{spec.end}"
            )
            self._parted(device_path, "mkpart", "primary", spec.parted_fs_type, spec.start, spec.end)

        self.reread(device_path)
        self.wait_for_partitions(device_path, len(layout))

        for name, size in self.inspect(device_path):
            log.info(f"Partition {name}: {size / 1024**2:.0f} MiB")

    def _parted(self, device_path: str, *args: str) -> None:
        try:
            self.runner(["parted", "-s", "-a", "optimal", "--", device_path, *args])
        except CommandError as error:
            raise PartitionError(
                f"parted {' '.join(args)} failed on {device_path}: {error.stderr}",
                device=device_path,
            ) from error

    def reread(self, device_path: str) -> bool:
        """Ask the kernel to reread the table; True if any mechanism succeeded."""
        run_quietly(self.runner, ["sync"])
        for command in REREAD_COMMANDS:
            if run_quietly(self.runner, [*command, device_path]):
                log.debug(f"Partition table reread via {command[0]}")
                run_quietly(self.runner, ["udevadm", "settle", "--timeout=10"])
                return True
            log.warning(f"{command[0]} could not reread {device_path}, trying fallback")
        log.warning(f"No reread mechanism succeeded for {device_path}")
        return False

    def count_partitions(self, device_path: str) -> int:
        name = Path(device_path).name
        found = 0
        index = 1
        while (self.sys_block / name / partition_node_name(name, index)).exists():
            found += 1
            index += 1
        return found

    def wait_for_partitions(self, device_path: str, expected: int) -> int:
        found = 0
        for attempt in range(1, self.wait_attempts + 1):
            found = self.count_partitions(device_path)
            log.trace(f"Poll {attempt}/{self.wait_attempts}: {found}/{expected} partitions on {device_path}")
            if found >= expected:
                return found
            if attempt < self.wait_attempts:
                self.sleep(self.wait_interval)
        raise PartitionTimeoutError(device_path, expected, found, self.wait_attempts)

    def inspect(self, device_path: str) -> list[tuple[str, int]]:
        """(name, size_bytes) for each partition lsblk reports, empty if unavailable."""
        result = self.runner(
            ["lsblk", "--json", "--bytes", "-o", "NAME,SIZE,TYPE", device_path],
            check=False,
            log_output=False,
        )
        if result.returncode != 0 or not result.stdout:
            return []
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            return []
        partitions = []
        for device in data.get("blockdevices", []):
            for child in device.get("children", []) or []:
                if child.get("type") == "part":
                    partitions.append((child.get("name", ""), int(child.get("size") or 0)))
        return partitions
