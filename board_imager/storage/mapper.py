"""Partition device nodes through the device-mapper bridge (kpartx).

Loop partitions are not always exposed by the kernel, so every partition is
mapped through kpartx to ``/dev/mapper/<loop>p<N>`` and the pipeline only ever
formats and mounts those nodes.
"""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Callable

from board_imager.domain.models import PartitionMapping
from board_imager.logging import LoggerFactory
from board_imager.storage.commands import run_command
from board_imager.storage.exceptions import CommandError, PartitionError, PartitionTimeoutError


log = LoggerFactory.for_mapper()

MAPPER_DIR = Path("/dev/mapper")

_ADD_MAP_RE = re.compile(r"^add map (\S+)")


class PartitionMapper:
    def __init__(
        self,
        runner: Callable = run_command,
        wait_attempts: int = 10,
        wait_interval: float = 1.0,
        mapper_dir: Path = MAPPER_DIR,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner
        self.wait_attempts = wait_attempts
        self.wait_interval = wait_interval
        self.mapper_dir = Path(mapper_dir)
        self.sleep = sleep

    def map_partitions(self, device_path: str, expected: int, root_index: int = 1) -> PartitionMapping:
        """Create one mapper node per partition of ``device_path``.

        Raises:
            PartitionError: If kpartx itself fails
            PartitionTimeoutError: If fewer than ``expected`` nodes are mapped, or the
                root node is still missing after the retry window
        """
        try:
            result = self.runner(["kpartx", "-a", "-v", "-s", device_path])
        except CommandError as error:
            raise PartitionError(
                f"kpartx -a failed on {device_path}: {(error.stderr or '').strip()}",
                device=device_path,
            ) from error

        names = []
        for line in (result.stdout or "").splitlines():
            match = _ADD_MAP_RE.match(line.strip())
            if match:
                names.append(match.group(1))
        if len(names) != expected:
            raise PartitionTimeoutError(device_path, expected, len(names), 1)

        nodes = tuple(str(self.mapper_dir / name) for name in names)
        self._wait_for_node(device_path, nodes, nodes[root_index - 1])
        for node in nodes:
            log.info(f"Mapped {node}")
        return PartitionMapping(device_path=device_path, nodes=nodes)

    def _wait_for_node(self, device_path: str, nodes: tuple[str, ...], node: str) -> None:
        for attempt in range(1, self.wait_attempts + 1):
            if Path(node).exists():
                return
            log.trace(f"Poll {attempt}/{self.wait_attempts}: waiting for {node}")
            if attempt < self.wait_attempts:
                self.sleep(self.wait_interval)
        found = sum(1 for n in nodes if Path(n).exists())
        raise PartitionTimeoutError(device_path, len(nodes), found, self.wait_attempts)

    def mapped_nodes(self, device_path: str) -> list[str]:
        prefix = Path(device_path).name + "p"
        if not self.mapper_dir.exists():
            return []
        return sorted(
            str(node) for node in self.mapper_dir.iterdir() if node.name.startswith(prefix)
        )

    def unmap_partitions(self, device_path: str) -> None:
        """Remove mapper nodes for ``device_path``. Never raises."""
        if not self.mapped_nodes(device_path):
            log.debug(f"No partition mappings for {device_path}")
            return
        try:
            result = self.runner(["kpartx", "-d", "-v", device_path], check=False)
        except CommandError as error:
            log.warning(f"kpartx -d failed for {device_path}: {error}")
            return
        if result.returncode != 0:
            log.warning(
                f"kpartx -d failed for {device_path}: {(result.stderr or '').strip()}"
            )
            return
        log.info(f"Removed partition mappings for {device_path}")
