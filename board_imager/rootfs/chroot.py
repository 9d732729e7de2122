"""Run shell scripts inside the populated tree."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from board_imager.logging import LoggerFactory
from board_imager.storage.commands import run_command
from board_imager.storage.exceptions import ChrootExecutionError, CommandError


log = LoggerFactory.for_rootfs()


class ChrootExecutor:
    def __init__(self, runner: Callable = run_command, shell: str = "/bin/bash"):
        self.runner = runner
        self.shell = shell

    def run_in_chroot(self, target_dir, script: str) -> None:
        """Feed ``script`` to a shell chrooted into ``target_dir``.

        Raises:
            ChrootExecutionError: If the script exits non-zero
        """
        target_dir = str(Path(target_dir))
        log.info(f"Running setup script in chroot {target_dir}")
        try:
            self.runner(["chroot", target_dir, self.shell, "-e"], input_text=script)
        except CommandError as error:
            raise ChrootExecutionError(target_dir, error.returncode, error.stderr) from error
