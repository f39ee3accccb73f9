"""Domain models for disk image construction."""

from __future__ import annotations

from .models import (
    BootLoader,
    Disk,
    ImageState,
    LoopDevice,
    Mapper,
    MapperRegistry,
    Partition,
    PartitionSize,
    SizeKind,
    StorageType,
)


__all__ = [
    "BootLoader",
    "Disk",
    "ImageState",
    "LoopDevice",
    "Mapper",
    "MapperRegistry",
    "Partition",
    "PartitionSize",
    "SizeKind",
    "StorageType",
]
