"""Mount orchestration for the image partitions.

Root is mounted first and nested partitions (``boot/efi``) after it; teardown
runs in exact reverse order. Every mount and unmount is verified against the
mount table rather than trusting the exit code alone.

Functions:
    - is_mountpoint_active(): Check /proc/mounts (falls back to os.path.ismount)

Classes:
    - MountOrchestrator: mount(), unmount(), unmount_all()
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Iterable, Optional

from board_imager.domain.models import MountPoint
from board_imager.logging import LoggerFactory
from board_imager.storage.commands import run_command, run_quietly
from board_imager.storage.exceptions import CommandError, ImageBuildError, MountError


log = LoggerFactory.for_mount()

PROC_MOUNTS = Path("/proc/mounts")


def _decode_mount_path(field: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as octal
    return (
        field.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def active_mountpoints(mounts_file: Path = PROC_MOUNTS) -> list[str]:
    try:
        with open(mounts_file, "r", encoding="utf-8") as mounts:
            return [
                _decode_mount_path(parts[1])
                for parts in (line.split() for line in mounts)
                if len(parts) > 1
            ]
    except FileNotFoundError:
        return []


def is_mountpoint_active(path: str, mounts_file: Path = PROC_MOUNTS) -> bool:
    """Check if a mountpoint is currently active."""
    if not Path(mounts_file).exists():
        return os.path.ismount(path)
    return str(path) in active_mountpoints(mounts_file)


def _is_nested(child: str, parent: str) -> bool:
    return child != parent and Path(child).is_relative_to(parent)


class MountOrchestrator:
    def __init__(
        self,
        runner: Callable = run_command,
        is_mounted: Optional[Callable[[str], bool]] = None,
        list_mounted: Optional[Callable[[], Iterable[str]]] = None,
    ):
        self.runner = runner
        self._is_mounted = is_mounted or is_mountpoint_active
        self._list_mounted = list_mounted or active_mountpoints
        self.mounted: list[str] = []

    def is_mounted(self, path) -> bool:
        return self._is_mounted(str(path))

    def _active_below(self, path: str) -> list[str]:
        candidates = set(self.mounted) | set(self._list_mounted())
        return sorted(
            (p for p in candidates if _is_nested(p, path) and self.is_mounted(p)),
            key=lambda p: len(Path(p).parts),
            reverse=True,
        )

    def mount(self, node: str, path) -> MountPoint:
        """Mount ``node`` at ``path``, creating the directory if needed.

        Raises:
            MountError: If the mount fails, cannot be verified, or would hide an
                already mounted nested path
        """
        path = str(Path(path).resolve())
        hidden = self._active_below(path)
        if hidden:
            raise MountError(
                f"Refusing to mount {node} at {path}: nested mounts already active ({', '.join(hidden)})",
                path=path,
                device=node,
            )
        Path(path).mkdir(parents=True, exist_ok=True)
        try:
            self.runner(["mount", node, path])
        except CommandError as error:
            raise MountError(
                f"Failed to mount {node} at {path}: {error.stderr}", path=path, device=node
            ) from error
        if not self.is_mounted(path):
            raise MountError(
                f"mount reported success but {path} is not a mount point", path=path, device=node
            )
        self.mounted.append(path)
        log.info(f"Mounted {node} at {path}")
        return MountPoint(node=node, path=Path(path), active=True)

    def unmount(self, path) -> None:
        """Unmount ``path``; a no-op when it is not mounted.

        Raises:
            MountError: If a nested mount is still active, or umount fails or
                leaves the path mounted
        """
        path = str(Path(path).resolve())
        if not self.is_mounted(path):
            log.debug(f"{path} is not mounted, nothing to unmount")
            self._forget(path)
            return
        nested = self._active_below(path)
        if nested:
            raise MountError(
                f"Refusing to unmount {path} before nested mounts {', '.join(nested)}",
                path=path,
            )
        try:
            self.runner(["umount", path])
        except CommandError as error:
            raise MountError(f"Failed to unmount {path}: {error.stderr}", path=path) from error
        if self.is_mounted(path):
            raise MountError(f"{path} still mounted after umount", path=path)
        self._forget(path)
        log.info(f"Unmounted {path}")

    def _forget(self, path: str) -> None:
        if path in self.mounted:
            self.mounted.remove(path)

    def unmount_all(self, paths: Optional[Iterable] = None, best_effort: bool = False) -> list[str]:
        """Unmount ``paths`` (default: everything mounted here) in reverse order.

        ``paths`` are given in mount order. In best-effort mode individual
        failures are logged and skipped, nested paths are always handled first,
        and anything left mounted gets a final recursive unmount.

        Returns:
            Paths that are still mounted (always empty in strict mode)
        """
        ordered = [str(Path(p).resolve()) for p in (paths if paths is not None else list(self.mounted))]
        ordered.reverse()
        run_quietly(self.runner, ["sync"])

        if not best_effort:
            for path in ordered:
                self.unmount(path)
            return []

        # innermost first even if the caller's order was wrong; sort is stable
        ordered.sort(key=lambda p: len(Path(p).parts), reverse=True)
        for path in ordered:
            try:
                self.unmount(path)
            except ImageBuildError as error:
                log.warning(f"Best-effort unmount of {path} failed: {error}")

        leftover = [p for p in ordered if self.is_mounted(p)]
        for path in sorted(leftover, key=lambda p: len(Path(p).parts)):
            if not self.is_mounted(path):
                continue
            log.warning(f"Falling back to recursive unmount of {path}")
            if not run_quietly(self.runner, ["umount", "-R", path]):
                log.error(f"Recursive unmount of {path} failed")
        remaining = [p for p in ordered if self.is_mounted(p)]
        for path in ordered:
            if path not in remaining:
                self._forget(path)
        return remaining
