"""Root filesystem population through debootstrap or mmdebstrap.

The populated tree is opaque to the pipeline apart from the few fixed paths
it edits afterwards (/etc/fstab, /etc/apt/sources.list, /boot).
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from board_imager.logging import LoggerFactory
from board_imager.storage.commands import run_command
from board_imager.storage.exceptions import CommandError, PopulationError


log = LoggerFactory.for_rootfs()

POPULATORS = ("debootstrap", "mmdebstrap")


class RootPopulator:
    def __init__(
        self,
        runner: Callable = run_command,
        tool: str = "debootstrap",
        no_check_gpg: bool = True,
    ):
        if tool not in POPULATORS:
            raise ValueError(f"Unknown populator {tool!r}, expected one of {POPULATORS}")
        self.runner = runner
        self.tool = tool
        self.no_check_gpg = no_check_gpg

    def command(self, architecture: str, suite: str, target_dir, mirror_url: str) -> list[str]:
        if self.tool == "mmdebstrap":
            command = [
                "mmdebstrap",
                f"--architectures={architecture}",
                "--include=ca-certificates,locales,dosfstools",
            ]
            if self.no_check_gpg:
                command.append("--skip=check/empty,check/gpg")
            else:
                command.append("--skip=check/empty")
        else:
            command = ["debootstrap", f"--arch={architecture}"]
            if self.no_check_gpg:
                command.append("--no-check-gpg")
        command.extend([suite, str(target_dir), mirror_url])
        return command

    def populate(self, architecture: str, suite: str, target_dir, mirror_url: str) -> None:
        """Fill ``target_dir`` with a base system.

        Raises:
            PopulationError: If the tool exits non-zero
        """
        target_dir = Path(target_dir)
        command = self.command(architecture, suite, target_dir, mirror_url)
        log.info(f"Populating {target_dir} with {self.tool} ({architecture}, {suite})")
        try:
            self.runner(command, log_output=False)
        except CommandError as error:
            raise PopulationError(
                f"{self.tool} failed with code {error.returncode}: {error.stderr}",
                target=str(target_dir),
            ) from error
        log.success(f"Populated {target_dir}")
