"""Custom exceptions for image provisioning.

This module defines a hierarchy of exceptions for the build pipeline so each
failure names the resource it concerns (device path, mount path, file path).
The pipeline controller attaches the failing stage to the error before it is
re-raised, so the CLI can report both.

Exception Hierarchy:
    ImageBuildError (base)
        ├── CommandError
        ├── MissingToolError
        ├── LoopDeviceError
        │   └── ResourceBusyError
        ├── PartitionError
        │   ├── InvalidLayoutError
        │   └── PartitionTimeoutError
        ├── FormatError
        ├── UUIDUnavailableError
        ├── MountError
        ├── PopulationError
        ├── ChrootExecutionError
        ├── PatchVerificationError
        └── LedgerError

Usage:
    from board_imager.storage.exceptions import ResourceBusyError

    if "could not find any free loop device" in stderr:
        raise ResourceBusyError(image_path, stderr)
"""

from __future__ import annotations

from typing import Optional, Sequence


class ImageBuildError(Exception):
    """Base exception for all image provisioning operations."""

    stage: Optional[str] = None
    resource: Optional[str] = None


class CommandError(ImageBuildError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        self.resource = self.command[-1] if self.command else None
        msg = f"Command failed ({' '.join(self.command)}) rc={returncode}"
        if stderr:
            msg += f": {stderr}"
        super().__init__(msg)


class MissingToolError(ImageBuildError):
    """Required host tools are not installed."""

    def __init__(self, tools: Sequence[str]):
        self.tools = list(tools)
        super().__init__(f"Missing required host tools: {', '.join(self.tools)}")


class LoopDeviceError(ImageBuildError):
    """Loop device could not be attached or detached."""

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        self.resource = device
        super().__init__(message)


class ResourceBusyError(LoopDeviceError):
    """No free loop device is available."""

    def __init__(self, image_path: str, reason: str = ""):
        self.image_path = image_path
        self.reason = reason
        msg = f"No free loop device available for {image_path}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.resource = image_path


class PartitionError(ImageBuildError):
    """Partition table could not be written."""

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        self.resource = device
        super().__init__(message)


class InvalidLayoutError(PartitionError):
    """Partition layout violates its invariants."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid partition layout: {reason}")


class PartitionTimeoutError(PartitionError):
    """Expected partition device nodes never appeared."""

    def __init__(self, device: str, expected: int, found: int, attempts: int):
        self.expected = expected
        self.found = found
        self.attempts = attempts
        super().__init__(
            f"Partition nodes for {device} did not appear: "
            f"expected {expected}, found {found} after {attempts} attempts",
            device=device,
        )


class FormatError(ImageBuildError):
    """mkfs failed or the filesystem type is unsupported."""

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        self.resource = device
        super().__init__(message)


class UUIDUnavailableError(ImageBuildError):
    """Filesystem UUID could not be read back after formatting."""

    def __init__(self, device: str, reason: str = ""):
        self.device = device
        self.resource = device
        msg = f"No filesystem UUID reported for {device}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MountError(ImageBuildError):
    """Mount or unmount failed, or its result could not be verified."""

    def __init__(self, message: str, path: Optional[str] = None, device: Optional[str] = None):
        self.path = path
        self.device = device
        self.resource = path or device
        super().__init__(message)


class PopulationError(ImageBuildError):
    """Root filesystem population tool failed."""

    def __init__(self, message: str, target: Optional[str] = None):
        self.target = target
        self.resource = target
        super().__init__(message)


class ChrootExecutionError(ImageBuildError):
    """A script run inside the chroot exited with a non-zero status."""

    def __init__(self, target: str, returncode: int, stderr: str = ""):
        self.target = target
        self.returncode = returncode
        self.stderr = stderr
        self.resource = target
        msg = f"Chroot script in {target} failed with code {returncode}"
        if stderr:
            msg += f": {stderr}"
        super().__init__(msg)


class PatchVerificationError(ImageBuildError):
    """Boot configuration substitution did not take effect."""

    def __init__(self, file_path: str, reason: str):
        self.file_path = file_path
        self.reason = reason
        self.resource = file_path
        super().__init__(f"Boot config {file_path} verification failed: {reason}")


class LedgerError(ImageBuildError):
    """Resource ledger could not be read or written."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        self.resource = path
        super().__init__(message)
