"""Domain model for image provisioning.

Type-safe objects for every resource the pipeline creates or owns, so the
components exchange dataclasses instead of loose dicts and device strings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from board_imager.storage.exceptions import InvalidLayoutError


MIB = 1024 * 1024

# parted -a optimal rounds a 0% start up to the first 1MiB boundary
ALIGNMENT_BYTES = MIB

_BOUND_RE = re.compile(r"^(\d+(?:\.\d+)?)(%|MiB|GiB|KiB|B)$")
_UNIT_BYTES = {"B": 1, "KiB": 1024, "MiB": MIB, "GiB": 1024 * MIB}


# ==============================================================================
# Partition Domain
# ==============================================================================


class PartitionRole(Enum):
    BOOT = "boot"
    ROOT = "root"


class PartitionScheme(Enum):
    SINGLE_ROOT = "single-root"
    BOOT_PLUS_ROOT = "boot-plus-root"

    @classmethod
    def parse(cls, value: "str | PartitionScheme") -> "PartitionScheme":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            choices = ", ".join(scheme.value for scheme in cls)
            raise InvalidLayoutError(f"unknown scheme {value!r} (choose from {choices})")


def bound_to_bytes(bound: str, device_size_bytes: int) -> int:
    """Convert a parted bound ("0%", "256MiB", "100%") to a byte offset."""
    kind, value = _parse_bound(bound)
    if kind == "%":
        return int(device_size_bytes * value / 100)
    return int(value)


def _parse_bound(bound: str) -> tuple[str, float]:
    match = _BOUND_RE.match(bound.strip())
    if not match:
        raise InvalidLayoutError(f"unparseable bound {bound!r}")
    value, unit = float(match.group(1)), match.group(2)
    if unit == "%":
        if value > 100:
            raise InvalidLayoutError(f"percentage bound {bound!r} exceeds 100%")
        return ("%", value)
    return ("B", value * _UNIT_BYTES[unit])


def _precedes(lower: str, upper: str) -> Optional[bool]:
    """Whether lower < upper, or None when it depends on the device size."""
    lower_kind, lower_value = _parse_bound(lower)
    upper_kind, upper_value = _parse_bound(upper)
    if lower_kind == upper_kind:
        return lower_value < upper_value
    # 0% sorts first and 100% last against any absolute bound
    if lower_kind == "%" and lower_value == 0:
        return True
    if upper_kind == "%" and upper_value == 100:
        return True
    if lower_kind == "%" and lower_value == 100:
        return False
    if upper_kind == "%" and upper_value == 0:
        return False
    return None


@dataclass(frozen=True)
class PartitionSpec:
    """One entry of a partition table, in table order."""

    index: int  # 1-based position in the table
    role: PartitionRole
    fs_type: str  # "ext4" or "vfat"
    start: str  # parted bound, e.g. "0%" or "256MiB"
    end: str
    label: str
    mount_path: str  # path inside the image, "/" for root

    @property
    def parted_fs_type(self) -> str:
        return "fat32" if self.fs_type == "vfat" else self.fs_type


@dataclass(frozen=True)
class PartitionExtent:
    index: int
    start_bytes: int
    end_bytes: int

    @property
    def size_bytes(self) -> int:
        return self.end_bytes - self.start_bytes

    @property
    def size_mib(self) -> float:
        return self.size_bytes / MIB


@dataclass(frozen=True)
class PartitionLayout:
    """Ordered partition specs with their invariants checked on construction."""

    scheme: PartitionScheme
    partitions: tuple[PartitionSpec, ...]

    def __post_init__(self) -> None:
        if not self.partitions:
            raise InvalidLayoutError("layout has no partitions")
        roots = [p for p in self.partitions if p.role is PartitionRole.ROOT]
        if len(roots) != 1:
            raise InvalidLayoutError(f"expected exactly one root partition, got {len(roots)}")
        for position, spec in enumerate(self.partitions, start=1):
            if spec.index != position:
                raise InvalidLayoutError(
                    f"partition {spec.label} has index {spec.index}, expected {position}"
                )
        previous_end = None
        for spec in self.partitions:
            if _precedes(spec.start, spec.end) is False:
                raise InvalidLayoutError(
                    f"partition {spec.index} start {spec.start} is not below end {spec.end}"
                )
            if previous_end is not None and _precedes(spec.start, previous_end) is True:
                raise InvalidLayoutError(
                    f"partition {spec.index} starts at {spec.start} before previous end {previous_end}"
                )
            previous_end = spec.end
        if self.partitions[-1].end != "100%":
            raise InvalidLayoutError("last partition must end at 100%")

    def __len__(self) -> int:
        return len(self.partitions)

    def __iter__(self):
        return iter(self.partitions)

    @property
    def root(self) -> PartitionSpec:
        return next(p for p in self.partitions if p.role is PartitionRole.ROOT)

    def mount_order(self) -> list[PartitionSpec]:
        """Specs sorted so every mount path comes after the path it nests under."""
        return sorted(self.partitions, key=lambda p: len(Path(p.mount_path).parts))

    def resolve(self, device_size_bytes: int) -> list[PartitionExtent]:
        """Byte extents the layout occupies on a device of the given size."""
        extents = []
        for spec in self.partitions:
            start = bound_to_bytes(spec.start, device_size_bytes)
            end = bound_to_bytes(spec.end, device_size_bytes)
            if start < ALIGNMENT_BYTES:
                start = ALIGNMENT_BYTES
            else:
                start = -(-start // ALIGNMENT_BYTES) * ALIGNMENT_BYTES
            extents.append(PartitionExtent(spec.index, start, end))
        return extents


# ==============================================================================
# Resource Domain
# ==============================================================================


@dataclass(frozen=True)
class ImageFile:
    path: Path
    size_bytes: int


@dataclass(frozen=True)
class LoopBinding:
    image_path: Path
    device_path: str


@dataclass(frozen=True)
class PartitionMapping:
    """Block-device nodes for one loop device, one per layout entry, in order."""

    device_path: str
    nodes: tuple[str, ...]

    def node_for(self, spec: PartitionSpec) -> str:
        return self.nodes[spec.index - 1]


@dataclass
class FormattedPartition:
    spec: PartitionSpec
    node: str
    label: str
    uuid: str = ""


@dataclass
class MountPoint:
    node: str
    path: Path
    active: bool = False


@dataclass
class BuildArtifacts:
    """Everything the pipeline discovered about the image it produced."""

    image: Optional[ImageFile] = None
    loop: Optional[LoopBinding] = None
    layout: Optional[PartitionLayout] = None
    mapping: Optional[PartitionMapping] = None
    formatted: list[FormattedPartition] = field(default_factory=list)
    mounts: list[MountPoint] = field(default_factory=list)
    boot_env_patched: bool = False

    @property
    def root_uuid(self) -> str:
        for partition in self.formatted:
            if partition.spec.role is PartitionRole.ROOT:
                return partition.uuid
        return ""
