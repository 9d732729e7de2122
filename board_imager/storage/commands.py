"""Command execution utilities shared by every storage component.

Components never call subprocess directly; they take a ``runner`` argument
that defaults to :func:`run_command`. Tests swap in a fake runner that records
commands and returns canned results, so no real block device is touched.
"""

from __future__ import annotations

import shutil
import subprocess
from typing import Callable, Iterable, Optional, Protocol, Sequence

from board_imager.logging import LoggerFactory
from board_imager.storage.exceptions import CommandError, MissingToolError


log = LoggerFactory.for_command()


class CommandRunner(Protocol):
    def __call__(
        self,
        command: Sequence[str],
        check: bool = True,
        input_text: Optional[str] = None,
        log_output: bool = True,
    ) -> subprocess.CompletedProcess:
        ...


def run_command(
    command: Sequence[str],
    check: bool = True,
    input_text: Optional[str] = None,
    log_output: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command and return the completed process.

    Args:
        command: Argument list (never a shell string)
        check: Raise CommandError on a non-zero exit
        input_text: Text fed to stdin
        log_output: Log stdout/stderr at DEBUG

    Raises:
        CommandError: If check is set and the command fails, or the binary is missing
    """
    command = [str(part) for part in command]
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command, input=input_text, text=True, capture_output=True, check=False
        )
    except FileNotFoundError as error:
        raise CommandError(command, 127, str(error)) from error
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    log.debug(f"Command completed with return code {result.returncode}")
    if check and result.returncode != 0:
        raise CommandError(command, result.returncode, (result.stderr or "").strip())
    return result


def run_quietly(runner: Callable[..., subprocess.CompletedProcess], command: Sequence[str]) -> bool:
    """Run a settle/sync style helper, returning False instead of raising."""
    try:
        result = runner(command, check=False, log_output=False)
    except CommandError:
        return False
    return result.returncode == 0


REQUIRED_TOOLS = (
    "losetup",
    "parted",
    "partprobe",
    "kpartx",
    "mkfs.ext4",
    "mkfs.vfat",
    "blkid",
    "mount",
    "umount",
    "chroot",
)


def check_required_tools(
    tools: Iterable[str] = REQUIRED_TOOLS, which: Callable[[str], Optional[str]] = shutil.which
) -> None:
    """Raise MissingToolError listing every tool not found on PATH."""
    missing = [tool for tool in tools if not which(tool)]
    if missing:
        raise MissingToolError(missing)
