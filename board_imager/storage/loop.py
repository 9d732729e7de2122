"""Loop device allocation and release.

A loop device is always allocated dynamically (``losetup --find``) so two
builds never fight over a hardcoded ``/dev/loopN``. Release is idempotent
because rollback code calls it speculatively.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from board_imager.logging import LoggerFactory
from board_imager.storage.commands import run_command, run_quietly
from board_imager.storage.exceptions import LoopDeviceError, ResourceBusyError


log = LoggerFactory.for_loop()

SYS_BLOCK = Path("/sys/block")

_BUSY_MARKERS = (
    "could not find any free loop device",
    "no free loop device",
    "failed to find an unused loop device",
)
_UNBOUND_MARKERS = (
    "no such device or address",
    "no such device",
    "no such file or directory",
)


class LoopDeviceManager:
    def __init__(self, runner: Callable = run_command, sys_block: Path = SYS_BLOCK):
        self.runner = runner
        self.sys_block = Path(sys_block)

    def acquire(self, image_path: Path) -> str:
        """Bind ``image_path`` to a free loop device and return its path.

        Raises:
            ResourceBusyError: If no loop device is free
            LoopDeviceError: If losetup fails for any other reason
        """
        result = self.runner(
            ["losetup", "--find", "--show", "--partscan", str(image_path)], check=False
        )
        stderr = (result.stderr or "").strip()
        if result.returncode != 0:
            if any(marker in stderr.lower() for marker in _BUSY_MARKERS):
                raise ResourceBusyError(str(image_path), stderr)
            raise LoopDeviceError(f"losetup failed for {image_path}: {stderr or 'no output'}")
        device = (result.stdout or "").strip().splitlines()
        if not device or not device[-1].startswith("/dev/"):
            raise LoopDeviceError(f"losetup did not return a loop device for {image_path}")
        device_path = device[-1].strip()
        log.info(f"Attached {image_path} to {device_path}")
        return device_path

    def is_bound(self, device_path: str) -> bool:
        name = Path(device_path).name
        return (self.sys_block / name / "loop" / "backing_file").exists()

    def release(self, device_path: str) -> None:
        """Detach ``device_path``; a no-op when it is not bound.

        Raises:
            LoopDeviceError: If losetup refuses to detach a bound device
        """
        if not self.is_bound(device_path):
            log.debug(f"{device_path} is not bound, nothing to release")
            return
        run_quietly(self.runner, ["sync"])
        result = self.runner(["losetup", "--detach", device_path], check=False)
        if result.returncode == 0:
            log.info(f"Detached {device_path}")
            return
        stderr = (result.stderr or "").strip()
        if any(marker in stderr.lower() for marker in _UNBOUND_MARKERS):
            log.warning(f"Ignorable failure while detaching {device_path}: {stderr}")
            return
        raise LoopDeviceError(f"Failed to detach {device_path}: {stderr}", device=device_path)

    def find_bindings(self, image_path: Path) -> list[str]:
        """Loop devices currently bound to ``image_path``."""
        result = self.runner(["losetup", "--associated", str(image_path)], check=False)
        if result.returncode != 0:
            return []
        devices = []
        for line in (result.stdout or "").splitlines():
            # "/dev/loop3: [2049]:1234 (/path/to/image.img)"
            device = line.split(":", 1)[0].strip()
            if device.startswith("/dev/"):
                devices.append(device)
        return devices
