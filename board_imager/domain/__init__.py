"""Domain models for image provisioning.

This package contains type-safe objects for the partition layout and for
every resource the build pipeline acquires.
"""

from __future__ import annotations

from .models import (
    BuildArtifacts,
    FormattedPartition,
    ImageFile,
    LoopBinding,
    MountPoint,
    PartitionExtent,
    PartitionLayout,
    PartitionMapping,
    PartitionRole,
    PartitionScheme,
    PartitionSpec,
)


__all__ = [
    "BuildArtifacts",
    "FormattedPartition",
    "ImageFile",
    "LoopBinding",
    "MountPoint",
    "PartitionExtent",
    "PartitionLayout",
    "PartitionMapping",
    "PartitionRole",
    "PartitionScheme",
    "PartitionSpec",
]
