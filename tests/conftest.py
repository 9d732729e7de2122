"""
Pytest configuration and shared fixtures for board-imager tests.

Nothing here touches a real block device: components get a FakeRunner that
records commands, and the pipeline tests share one FakeSystem that tracks
loop bindings, mapper nodes and mounts so rollback can be checked.
"""

import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from board_imager.boot.patcher import BootConfigPatcher
from board_imager.config import settings
from board_imager.domain.models import PartitionMapping
from board_imager.pipeline.controller import BuildComponents
from board_imager.pipeline.ledger import ResourceLedger
from board_imager.storage.exceptions import (
    ChrootExecutionError,
    CommandError,
    FormatError,
    PartitionTimeoutError,
    PopulationError,
    ResourceBusyError,
    UUIDUnavailableError,
)
from board_imager.storage.mount import MountOrchestrator
from board_imager.storage.partition import PartitionPlanner


ROOT_UUID = "3f1c2b9e-7a44-4d2e-9a51-0c6a2f7e9b13"
BOOT_UUID = "A1B2-C3D4"
PLACEHOLDER_UUID = "00000000-0000-0000-0000-000000000000"

BOOT_ENV_TEXT = (
    "bootdelay=0\n"
    "console=ttyS0,115200\n"
    f"rootdev=UUID={PLACEHOLDER_UUID}\n"
    "knl_name=Image\n"
)


# ==============================================================================
# Command Runner Fakes
# ==============================================================================


class FakeRunner:
    """Stand-in for run_command: records calls, answers from a handler."""

    def __init__(self, handler: Optional[Callable[[List[str]], Tuple[int, str, str]]] = None):
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.handler = handler or (lambda command: (0, "", ""))

    def __call__(self, command, check=True, input_text=None, log_output=True):
        command = [str(part) for part in command]
        self.calls.append(command)
        self.inputs.append(input_text)
        returncode, stdout, stderr = self.handler(command)
        if check and returncode != 0:
            raise CommandError(command, returncode, stderr)
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    def commands_starting(self, *prefix: str) -> List[List[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


# ==============================================================================
# Simulated System
# ==============================================================================


class FakeSystem:
    """Loop, mapper and mount state shared by the fake components."""

    def __init__(self):
        self.bound: Dict[str, str] = {}
        self.mapped: Dict[str, List[str]] = {}
        self.mounted: List[str] = []
        self.fail_at: Optional[str] = None
        self.events: List[str] = []

    def check(self, operation: str) -> bool:
        return self.fail_at == operation

    def mount_runner(self, command: List[str]) -> Tuple[int, str, str]:
        if command[0] == "mount":
            if self.check("mount"):
                return 32, "", f"mount: {command[2]}: wrong fs type"
            self.mounted.append(command[2])
            self.events.append(f"mount {command[2]}")
        elif command[:2] == ["umount", "-R"]:
            target = command[2]
            for path in sorted(self.mounted, key=len, reverse=True):
                if path == target or path.startswith(target + "/"):
                    self.mounted.remove(path)
                    self.events.append(f"umount {path}")
        elif command[0] == "umount":
            if self.check("umount"):
                return 32, "", "umount: target is busy"
            self.mounted.remove(command[1])
            self.events.append(f"umount {command[1]}")
        return 0, "", ""


class FakeLoop:
    def __init__(self, system: FakeSystem, device: str = "/dev/loop7"):
        self.system = system
        self.device = device

    def acquire(self, image_path):
        if self.system.check("allocate"):
            raise ResourceBusyError(str(image_path), "could not find any free loop device")
        self.system.bound[self.device] = str(image_path)
        self.system.events.append(f"acquire {self.device}")
        return self.device

    def is_bound(self, device_path):
        return device_path in self.system.bound

    def release(self, device_path):
        if self.system.check("release"):
            # detach deferred once; the next release succeeds
            self.system.fail_at = None
            return
        if self.system.bound.pop(device_path, None) is not None:
            self.system.events.append(f"release {device_path}")

    def find_bindings(self, image_path):
        return [d for d, image in self.system.bound.items() if image == str(image_path)]


class FakePlanner(PartitionPlanner):
    def __init__(self, system: FakeSystem):
        super().__init__(runner=FakeRunner())
        self.system = system
        self.applied = []

    def apply(self, device_path, layout):
        if self.system.check("partition"):
            raise PartitionTimeoutError(device_path, len(layout), 0, 10)
        self.applied.append((device_path, layout))


class FakeMapper:
    def __init__(self, system: FakeSystem):
        self.system = system

    def map_partitions(self, device_path, expected, root_index=1):
        name = Path(device_path).name
        nodes = [f"/dev/mapper/{name}p{i}" for i in range(1, expected + 1)]
        self.system.mapped[device_path] = nodes
        self.system.events.append(f"map {device_path}")
        if self.system.check("map"):
            raise PartitionTimeoutError(device_path, expected, expected - 1, 10)
        return PartitionMapping(device_path=device_path, nodes=tuple(nodes))

    def mapped_nodes(self, device_path):
        return list(self.system.mapped.get(device_path, []))

    def unmap_partitions(self, device_path):
        if self.system.check("unmap"):
            # kpartx -d leaves the nodes once; the next attempt succeeds
            self.system.fail_at = None
            return
        if self.system.mapped.pop(device_path, None) is not None:
            self.system.events.append(f"unmap {device_path}")


class FakeFormatter:
    def __init__(self, system: FakeSystem):
        self.system = system
        self.formatted = []

    def format(self, node, fs_type, label):
        if self.system.check("format"):
            raise FormatError(f"mkfs failed on {node}", device=node)
        self.formatted.append((node, fs_type, label))

    def read_uuid(self, node):
        if self.system.check("uuid"):
            raise UUIDUnavailableError(node, "blkid returned an empty value")
        fs_type = next(f for n, f, _ in self.formatted if n == node)
        return BOOT_UUID if fs_type == "vfat" else ROOT_UUID


class FakePopulator:
    def __init__(self, system: FakeSystem, with_env_file: bool = True, env_name: str = "env_k1-x.txt"):
        self.system = system
        self.with_env_file = with_env_file
        self.env_name = env_name
        self.calls = []

    def populate(self, architecture, suite, target_dir, mirror_url):
        self.calls.append((architecture, suite, Path(target_dir), mirror_url))
        if self.system.check("populate"):
            raise PopulationError("debootstrap failed with code 1", target=str(target_dir))
        root = Path(target_dir)
        (root / "etc" / "ssh").mkdir(parents=True, exist_ok=True)
        (root / "etc" / "ssh" / "ssh_host_ed25519_key").write_text("key")
        (root / "var" / "lib" / "apt" / "lists").mkdir(parents=True, exist_ok=True)
        (root / "var" / "lib" / "apt" / "lists" / "deb_InRelease").write_text("x")
        (root / "boot").mkdir(parents=True, exist_ok=True)
        if self.with_env_file:
            (root / "boot" / self.env_name).write_text(BOOT_ENV_TEXT)


class FakeChroot:
    def __init__(self, system: FakeSystem):
        self.system = system
        self.scripts = []

    def run_in_chroot(self, target_dir, script):
        if self.system.check("chroot"):
            raise ChrootExecutionError(str(target_dir), 100, "E: Unable to locate package")
        self.scripts.append((Path(target_dir), script))


@pytest.fixture
def fake_system() -> FakeSystem:
    return FakeSystem()


@pytest.fixture
def fake_components(fake_system) -> BuildComponents:
    mount_runner = FakeRunner(fake_system.mount_runner)
    return BuildComponents(
        loop=FakeLoop(fake_system),
        planner=FakePlanner(fake_system),
        mapper=FakeMapper(fake_system),
        formatter=FakeFormatter(fake_system),
        mounts=MountOrchestrator(
            runner=mount_runner,
            is_mounted=lambda path: path in fake_system.mounted,
            list_mounted=lambda: list(fake_system.mounted),
        ),
        populator=FakePopulator(fake_system),
        chroot=FakeChroot(fake_system),
        patcher=BootConfigPatcher(),
    )


# ==============================================================================
# Configuration Fixtures
# ==============================================================================


@pytest.fixture
def default_settings(monkeypatch):
    monkeypatch.setattr(settings.settings_store, "values", dict(settings.DEFAULT_SETTINGS))


@pytest.fixture
def build_config(tmp_path, default_settings) -> settings.BuildConfig:
    return settings.build_config(
        {
            "workdir": tmp_path / "rootfs",
            "output_dir": tmp_path / "out",
            "ledger_path": tmp_path / "state" / "ledger.json",
            "device_wait_interval": 0,
        }
    )


@pytest.fixture
def ledger(build_config) -> ResourceLedger:
    return ResourceLedger(path=build_config.ledger_path)


@pytest.fixture
def boot_env_file(tmp_path) -> Path:
    path = tmp_path / "boot" / "env_k1-x.txt"
    path.parent.mkdir(parents=True)
    path.write_text(BOOT_ENV_TEXT)
    return path
