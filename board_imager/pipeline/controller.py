"""Build state machine and rollback guard.

Happy path:

    INIT -> ALLOCATED -> PARTITIONED -> MAPPED -> FORMATTED -> MOUNTED
         -> POPULATED -> PATCHED -> UNMOUNTED -> UNMAPPED -> RELEASED

Each transition records what it acquired in the :class:`ResourceLedger`.
When any stage raises, :class:`RollbackGuard` tears the ledger down in exact
reverse order (best effort, teardown errors are logged) and the original
error is re-raised with ``stage`` set. The image file itself is never
deleted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from board_imager.boot.patcher import BootConfigPatcher
from board_imager.config.settings import BuildConfig
from board_imager.domain.models import (
    BuildArtifacts,
    FormattedPartition,
    ImageFile,
    LoopBinding,
)
from board_imager.logging import EventLogger, LoggerFactory
from board_imager.pipeline.ledger import LOOP, MAPPING, MOUNT, ResourceEntry, ResourceLedger
from board_imager.rootfs import customize
from board_imager.rootfs.chroot import ChrootExecutor
from board_imager.rootfs.populate import RootPopulator
from board_imager.storage.commands import run_command
from board_imager.storage.exceptions import (
    ImageBuildError,
    LedgerError,
    LoopDeviceError,
    MountError,
    PartitionError,
)
from board_imager.storage.format import FilesystemFormatter
from board_imager.storage.image import build_timestamp
from board_imager.storage.loop import LoopDeviceManager
from board_imager.storage.mapper import PartitionMapper
from board_imager.storage.mount import MountOrchestrator
from board_imager.storage.partition import PartitionPlanner


class PipelineState(Enum):
    INIT = "INIT"
    ALLOCATED = "ALLOCATED"
    PARTITIONED = "PARTITIONED"
    MAPPED = "MAPPED"
    FORMATTED = "FORMATTED"
    MOUNTED = "MOUNTED"
    POPULATED = "POPULATED"
    PATCHED = "PATCHED"
    UNMOUNTED = "UNMOUNTED"
    UNMAPPED = "UNMAPPED"
    RELEASED = "RELEASED"
    FAILED = "FAILED"


HAPPY_PATH = (
    PipelineState.INIT,
    PipelineState.ALLOCATED,
    PipelineState.PARTITIONED,
    PipelineState.MAPPED,
    PipelineState.FORMATTED,
    PipelineState.MOUNTED,
    PipelineState.POPULATED,
    PipelineState.PATCHED,
    PipelineState.UNMOUNTED,
    PipelineState.UNMAPPED,
    PipelineState.RELEASED,
)


@dataclass
class BuildComponents:
    loop: LoopDeviceManager
    planner: PartitionPlanner
    mapper: PartitionMapper
    formatter: FilesystemFormatter
    mounts: MountOrchestrator
    populator: RootPopulator
    chroot: ChrootExecutor
    patcher: BootConfigPatcher

    @classmethod
    def default(cls, config: BuildConfig, runner: Callable = run_command) -> "BuildComponents":
        return cls(
            loop=LoopDeviceManager(runner=runner),
            planner=PartitionPlanner(
                runner=runner,
                wait_attempts=config.device_wait_attempts,
                wait_interval=config.device_wait_interval,
            ),
            mapper=PartitionMapper(
                runner=runner,
                wait_attempts=config.device_wait_attempts,
                wait_interval=config.device_wait_interval,
            ),
            formatter=FilesystemFormatter(runner=runner),
            mounts=MountOrchestrator(runner=runner),
            populator=RootPopulator(
                runner=runner, tool=config.populator, no_check_gpg=config.no_check_gpg
            ),
            chroot=ChrootExecutor(runner=runner),
            patcher=BootConfigPatcher(),
        )


class RollbackGuard:
    """Unwinds a ledger in reverse acquisition order, never raising."""

    def __init__(self, components: BuildComponents, ledger: ResourceLedger, log=None):
        self.components = components
        self.ledger = ledger
        self.log = log or LoggerFactory.for_pipeline(ledger.job_id)

    def teardown(self, entry: ResourceEntry) -> None:
        if entry.kind == MOUNT:
            remaining = self.components.mounts.unmount_all([entry.identifier], best_effort=True)
            if remaining:
                raise MountError(f"{entry.identifier} is still mounted", path=entry.identifier)
        elif entry.kind == MAPPING:
            self.components.mapper.unmap_partitions(entry.identifier)
            leftover = self.components.mapper.mapped_nodes(entry.identifier)
            if leftover:
                raise PartitionError(
                    f"Mappings still present: {', '.join(leftover)}", device=entry.identifier
                )
        elif entry.kind == LOOP:
            self.components.loop.release(entry.identifier)
            if self.components.loop.is_bound(entry.identifier):
                raise LoopDeviceError(
                    f"{entry.identifier} is still bound after release", device=entry.identifier
                )

    def unwind(self) -> list[ResourceEntry]:
        """Tear down every ledger entry; returns the entries that could not be released."""
        failed = []
        for entry in self.ledger.reverse():
            try:
                self.teardown(entry)
            except Exception as error:
                EventLogger.log_teardown_failure(self.log, entry.kind, entry.identifier, error)
                failed.append(entry)
                continue
            try:
                self.ledger.discard(entry.kind, entry.identifier)
            except LedgerError as error:
                # the entry is gone from memory, only the file on disk is stale
                self.log.warning(f"Could not persist release of {entry.identifier}: {error}")
            EventLogger.log_resource_released(self.log, entry.kind, entry.identifier)
        if failed:
            self.log.error(
                f"Rollback left {len(failed)} resource(s) held, ledger kept at {self.ledger.path}"
            )
        else:
            self.log.info("Rollback complete, no resources held")
        return failed


def force_cleanup(components: BuildComponents, ledger: ResourceLedger) -> list[ResourceEntry]:
    """Recover from a crashed build given its last persisted ledger.

    Also releases loop devices still bound to the ledger's image that the
    crashed run never got to record. Safe to call repeatedly.
    """
    log = LoggerFactory.for_pipeline(ledger.job_id or "cleanup")
    if ledger.image_path:
        for device in components.loop.find_bindings(Path(ledger.image_path)):
            if ResourceEntry(LOOP, device) not in ledger:
                log.warning(f"Found unrecorded loop binding {device} for {ledger.image_path}")
                # a binding without its mapping entry still needs kpartx -d first
                ledger.record(LOOP, device)
                ledger.record(MAPPING, device)
    failed = RollbackGuard(components, ledger, log).unwind()
    if not failed:
        _delete_ledger(ledger, log)
    return failed


def _delete_ledger(ledger: ResourceLedger, log) -> None:
    try:
        ledger.delete()
    except LedgerError as error:
        log.warning(f"Nothing is held but the ledger could not be removed: {error}")


class ImageBuildPipeline:
    def __init__(
        self,
        config: BuildConfig,
        components: Optional[BuildComponents] = None,
        ledger: Optional[ResourceLedger] = None,
        job_id: Optional[str] = None,
        timestamp: Optional[str] = None,
    ):
        self.config = config
        self.components = components or BuildComponents.default(config)
        self.ledger = ledger if ledger is not None else ResourceLedger(path=config.ledger_path)
        self.ledger.job_id = job_id or self.ledger.job_id
        self.timestamp = timestamp or build_timestamp()
        self.log = LoggerFactory.for_pipeline(self.ledger.job_id)
        self.state = PipelineState.INIT
        self.failed_stage: Optional[PipelineState] = None
        self.artifacts = BuildArtifacts()
        self.history: list[PipelineState] = [PipelineState.INIT]

    @property
    def workdir(self) -> Path:
        return Path(self.config.workdir).resolve()

    def _mount_path(self, mount_path: str) -> Path:
        return self.workdir / mount_path.lstrip("/")

    def _advance(self, target: PipelineState) -> None:
        expected = HAPPY_PATH[HAPPY_PATH.index(target) - 1]
        if self.state is not expected:
            raise ImageBuildError(
                f"Illegal transition {self.state.value} -> {target.value}, expected from {expected.value}"
            )
        EventLogger.log_stage_transition(self.log, self.state.value, target.value)
        self.state = target
        self.history.append(target)

    def _acquired(self, kind: str, identifier) -> None:
        self.ledger.record(kind, str(identifier))
        EventLogger.log_resource_acquired(self.log, kind, str(identifier))

    def _released(self, kind: str, identifier) -> None:
        self.ledger.discard(kind, str(identifier))
        EventLogger.log_resource_released(self.log, kind, str(identifier))

    def stages(self):
        return (
            (PipelineState.ALLOCATED, self.allocate),
            (PipelineState.PARTITIONED, self.partition),
            (PipelineState.MAPPED, self.map_partitions),
            (PipelineState.FORMATTED, self.format_partitions),
            (PipelineState.MOUNTED, self.mount_partitions),
            (PipelineState.POPULATED, self.populate),
            (PipelineState.PATCHED, self.patch_boot_config),
            (PipelineState.UNMOUNTED, self.unmount_partitions),
            (PipelineState.UNMAPPED, self.unmap_partitions),
            (PipelineState.RELEASED, self.release),
        )

    def run(self, image: ImageFile) -> BuildArtifacts:
        """Drive ``image`` through every stage, rolling back on any failure."""
        self.artifacts.image = image
        self.ledger.image_path = str(image.path)
        self.ledger.save()

        for target, stage in self.stages():
            try:
                stage()
                self._advance(target)
            except Exception as error:
                self._fail(target, error)
                raise
        self.ledger.delete()
        self.log.success(f"Image {image.path} built, root UUID {self.artifacts.root_uuid}")
        return self.artifacts

    def _fail(self, target: PipelineState, error: Exception) -> None:
        self.failed_stage = target
        resource = getattr(error, "resource", None)
        self.log.error(
            f"Stage {target.value} failed after {self.state.value}"
            + (f" on {resource}" if resource else "")
            + f": {error}"
        )
        self.state = PipelineState.FAILED
        if not RollbackGuard(self.components, self.ledger, self.log).unwind():
            _delete_ledger(self.ledger, self.log)
        if getattr(error, "stage", None) is None:
            error.stage = target.value

    # --------------------------------------------------------------------------
    # Stages
    # --------------------------------------------------------------------------

    def allocate(self) -> None:
        image_path = self.artifacts.image.path
        device = self.components.loop.acquire(image_path)
        self._acquired(LOOP, device)
        self.artifacts.loop = LoopBinding(image_path=image_path, device_path=device)

    def partition(self) -> None:
        layout = self.components.planner.plan(self.config.scheme)
        self.components.planner.apply(self.artifacts.loop.device_path, layout)
        self.artifacts.layout = layout

    def map_partitions(self) -> None:
        device = self.artifacts.loop.device_path
        layout = self.artifacts.layout
        # recorded first: a half-finished kpartx run still needs kpartx -d
        self._acquired(MAPPING, device)
        self.artifacts.mapping = self.components.mapper.map_partitions(
            device, len(layout), root_index=layout.root.index
        )

    def format_partitions(self) -> None:
        formatted = []
        for spec in self.artifacts.layout:
            node = self.artifacts.mapping.node_for(spec)
            self.components.formatter.format(node, spec.fs_type, spec.label)
            uuid = self.components.formatter.read_uuid(node)
            formatted.append(FormattedPartition(spec=spec, node=node, label=spec.label, uuid=uuid))
        self.artifacts.formatted = formatted

    def mount_partitions(self) -> None:
        by_index = {p.spec.index: p for p in self.artifacts.formatted}
        for spec in self.artifacts.layout.mount_order():
            path = self._mount_path(spec.mount_path)
            # recorded first: mount may succeed even when verification fails
            self._acquired(MOUNT, path)
            self.artifacts.mounts.append(
                self.components.mounts.mount(by_index[spec.index].node, path)
            )

    def populate(self) -> None:
        config = self.config
        root = self.workdir
        self.components.populator.populate(
            config.architecture, config.bootstrap_suite, root, config.mirror
        )
        customize.write_fstab(root, self.artifacts.formatted)
        self.components.chroot.run_in_chroot(
            root,
            customize.setup_script(
                config.username,
                config.password,
                config.hostname,
                config.timezone,
                config.extra_packages,
            ),
        )
        customize.write_release_stamp(root, self.timestamp)
        customize.write_sources_list(root, config.sources_mirror, config.suite)
        customize.remove_ssh_host_keys(root)
        customize.copy_boot_files(config.boot_files_dir, root)
        customize.clean_apt_lists(root)

    def patch_boot_config(self) -> None:
        env_file = self.workdir / "boot" / self.config.boot_env_file
        result = self.components.patcher.patch_and_verify(env_file, self.artifacts.root_uuid)
        self.artifacts.boot_env_patched = result.found

    def unmount_partitions(self) -> None:
        paths = [str(mount.path) for mount in self.artifacts.mounts]
        self.components.mounts.unmount_all(paths)
        for path in reversed(paths):
            self._released(MOUNT, path)
        for mount in self.artifacts.mounts:
            mount.active = False

    def unmap_partitions(self) -> None:
        device = self.artifacts.loop.device_path
        self.components.mapper.unmap_partitions(device)
        leftover = self.components.mapper.mapped_nodes(device)
        if leftover:
            raise PartitionError(f"Mappings still present: {', '.join(leftover)}", device=device)
        self._released(MAPPING, device)

    def release(self) -> None:
        device = self.artifacts.loop.device_path
        self.components.loop.release(device)
        if self.components.loop.is_bound(device):
            raise LoopDeviceError(f"{device} is still bound after release", device=device)
        self._released(LOOP, device)
