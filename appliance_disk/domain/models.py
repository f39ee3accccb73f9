"""Domain model for disk image construction.

Type-safe objects for the partition plan, the disk topology and the kernel
resources (loop device, mappers) an image engine holds while it works.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from appliance_disk.storage.exceptions import ConfigurationError


SWAP_MOUNT_POINT = "SWAP"
ROOT_MOUNT_POINT = "/"

TYPE_CODE_LINUX = 0x83
TYPE_CODE_SWAP = 0x82
TYPE_CODE_EXTENDED = 0x05

EXTENDED_SEQUENCE = 4
FIRST_LOGICAL = 5

# Integer encodings used by legacy topology files
SIZE_IN_PERCENTS = -1
ALLOCATE_ALL = -2


# ==============================================================================
# Partition Plan
# ==============================================================================


class SizeKind(Enum):
    """How a partition size is expressed."""

    ABSOLUTE = "absolute"  # megabytes
    PERCENT = "percent"  # percentage of the whole disk
    REMAINING = "remaining"  # whatever is left on the disk


@dataclass(frozen=True)
class PartitionSize:
    kind: SizeKind
    value: int = 0

    @classmethod
    def megabytes(cls, value: int) -> PartitionSize:
        return cls(SizeKind.ABSOLUTE, int(value))

    @classmethod
    def percent(cls, value: int) -> PartitionSize:
        return cls(SizeKind.PERCENT, int(value))

    @classmethod
    def remaining(cls) -> PartitionSize:
        return cls(SizeKind.REMAINING)

    @property
    def is_remaining(self) -> bool:
        return self.kind is SizeKind.REMAINING

    def resolve(self, disk_size_mb: int) -> Optional[int]:
        """Resolve to megabytes; None means "let fdisk take the rest".

        Percentages divide before multiplying, so 5000MB at 50% is
        5000 // 100 * 50 = 2500 and 5050MB at 50% is still 2500.
        """
        if self.kind is SizeKind.REMAINING:
            return None
        if self.kind is SizeKind.PERCENT:
            return disk_size_mb // 100 * self.value
        return self.value

    @classmethod
    def parse(cls, value: Any, percent: Any = None) -> PartitionSize:
        """Parse a size from configuration.

        Accepts integers (megabytes), "50%", "*"/"remaining", and the legacy
        encoding where size -1 defers to ``percent`` and -2 means remaining.
        """
        if isinstance(value, str):
            text = value.strip().lower()
            if text in ("*", "remaining", "rest"):
                return cls.remaining()
            if text.endswith("%"):
                return cls._checked_percent(text[:-1])
            try:
                value = int(text)
            except ValueError as error:
                raise ConfigurationError(f"Invalid partition size: {value!r}") from error
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"Invalid partition size: {value!r}")
        if value == ALLOCATE_ALL:
            return cls.remaining()
        if value == SIZE_IN_PERCENTS:
            if percent is None:
                raise ConfigurationError("Partition size in percents requires size_percent")
            if int(percent) == ALLOCATE_ALL:
                return cls.remaining()
            return cls._checked_percent(percent)
        if value <= 0:
            raise ConfigurationError(f"Invalid partition size: {value!r}")
        return cls.megabytes(value)

    @classmethod
    def _checked_percent(cls, raw: Any) -> PartitionSize:
        try:
            pct = int(str(raw).strip())
        except ValueError as error:
            raise ConfigurationError(f"Invalid partition percentage: {raw!r}") from error
        if not 0 < pct <= 100:
            raise ConfigurationError(f"Partition percentage out of range: {pct}")
        return cls.percent(pct)

    def __str__(self) -> str:
        if self.kind is SizeKind.REMAINING:
            return "remaining"
        if self.kind is SizeKind.PERCENT:
            return f"{self.value}%"
        return f"{self.value}M"


def parse_type_code(value: Any) -> int:
    """Parse an fdisk partition type code.

    Codes are written the way fdisk reads them, in hex: "82", "0x82" and the
    bare integer 82 all mean Linux swap.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid partition type code: {value!r}")
    text = str(value).strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    try:
        code = int(text, 16)
    except ValueError as error:
        raise ConfigurationError(f"Invalid partition type code: {value!r}") from error
    if not 0 < code <= 0xFF:
        raise ConfigurationError(f"Partition type code out of range: {value!r}")
    return code


@dataclass(frozen=True)
class Partition:
    """One entry of a partition plan."""

    sequence: int  # 1-based, decides primary/extended/logical placement
    size: PartitionSize
    label: str = ""
    mount_point: str = ""  # absolute path inside the image, or SWAP
    filesystem: str = "ext4"
    filesystem_args: str = ""  # extra mkfs arguments, shell-split
    type_code: Optional[int] = None
    description: str = ""

    @property
    def is_swap(self) -> bool:
        return (
            self.type_code == TYPE_CODE_SWAP
            or self.filesystem.lower() == "swap"
            or self.mount_point.upper() == SWAP_MOUNT_POINT
        )

    @property
    def is_root(self) -> bool:
        return self.mount_point == ROOT_MOUNT_POINT

    @property
    def code(self) -> int:
        """Type code written to the partition table."""
        if self.type_code is not None:
            return self.type_code
        if self.is_swap:
            return TYPE_CODE_SWAP
        return TYPE_CODE_LINUX

    @property
    def mkfs_args(self) -> list[str]:
        return shlex.split(self.filesystem_args or "")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Partition:
        """Build a partition from a topology dict.

        Raises:
            ConfigurationError: If the sequence or size is missing or invalid
        """
        try:
            sequence = int(data["sequence"])
        except (KeyError, TypeError, ValueError) as error:
            raise ConfigurationError(f"Partition without a valid sequence: {data!r}") from error
        if sequence < 1:
            raise ConfigurationError(f"Partition sequence must be >= 1, got {sequence}")

        if "size" in data:
            size = PartitionSize.parse(data["size"])
        elif "size_mb" in data:
            size = PartitionSize.parse(data["size_mb"], data.get("size_percent"))
        else:
            raise ConfigurationError(f"Partition {sequence} has no size")

        type_code = data.get("type_code", data.get("type"))
        return cls(
            sequence=sequence,
            size=size,
            label=str(data.get("label") or ""),
            mount_point=str(data.get("mount_point") or ""),
            filesystem=str(data.get("filesystem") or "ext4"),
            filesystem_args=str(data.get("filesystem_args") or ""),
            type_code=parse_type_code(type_code) if type_code not in (None, "") else None,
            description=str(data.get("description") or ""),
        )


# ==============================================================================
# Disk Topology
# ==============================================================================


class BootLoader(Enum):
    """Bootloader strategy installed by make_bootable()."""

    NONE = "none"
    GRUB = "grub"  # legacy MBR GRUB
    GRUB2 = "grub2"  # two-stage GRUB with a synthetic device.map
    EXTLINUX = "extlinux"  # SYSLINUX family

    @classmethod
    def parse(cls, value: Any) -> BootLoader:
        if value is None or isinstance(value, cls):
            return value or cls.NONE
        text = str(value).strip().lower()
        if not text:
            return cls.NONE
        if text == "syslinux":
            return cls.EXTLINUX
        try:
            return cls(text)
        except ValueError as error:
            raise ConfigurationError(f"Unknown bootloader: {value!r}") from error


class StorageType(Enum):
    """Target disk-image format."""

    RAW = "raw"
    QCOW2 = "qcow2"
    VMDK = "vmdk"
    VDI = "vdi"
    VPC = "vpc"
    VHDX = "vhdx"

    @classmethod
    def parse(cls, value: Any) -> StorageType:
        if value is None or isinstance(value, cls):
            return value or cls.RAW
        text = str(value).strip().lower().lstrip(".")
        if not text:
            return cls.RAW
        try:
            return cls(text)
        except ValueError as error:
            raise ConfigurationError(f"Unknown storage type: {value!r}") from error


@dataclass(frozen=True)
class Disk:
    """Resolved storage configuration for one disk image."""

    path: str
    size_mb: int
    partitions: tuple[Partition, ...] = ()
    name: str = ""
    bootable: bool = False
    active_partition: int = 1
    bootloader: BootLoader = BootLoader.NONE
    storage_type: StorageType = StorageType.RAW
    fdisk_script: Optional[str] = None  # literal script used instead of synthesis
    description: str = ""

    @property
    def root_partition(self) -> Optional[Partition]:
        for part in self.partitions:
            if part.is_root:
                return part
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Optional[str] = None) -> Disk:
        """Build a disk from a topology dict.

        ``size_mb`` wins over the legacy ``hdd_size_gb``. An explicit ``path``
        argument overrides the one in the document.
        """
        if data.get("size_mb") is not None:
            size_mb = int(data["size_mb"])
        elif data.get("hdd_size_gb") is not None:
            size_mb = int(data["hdd_size_gb"]) * 1024
        else:
            raise ConfigurationError("Disk size is not defined (size_mb or hdd_size_gb)")
        if size_mb <= 0:
            raise ConfigurationError(f"Disk size must be positive, got {size_mb}")

        partitions = tuple(
            sorted(
                (Partition.from_dict(item) for item in data.get("partitions") or []),
                key=lambda part: part.sequence,
            )
        )
        return cls(
            path=str(path or data.get("path") or ""),
            size_mb=size_mb,
            partitions=partitions,
            name=str(data.get("name") or ""),
            bootable=_as_bool(data.get("bootable", False)),
            active_partition=int(data.get("active_partition") or 1),
            bootloader=BootLoader.parse(data.get("bootloader")),
            storage_type=StorageType.parse(data.get("storage_type")),
            fdisk_script=data.get("fdisk_script") or None,
            description=str(data.get("description") or ""),
        )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# ==============================================================================
# Kernel Resources
# ==============================================================================


@dataclass(frozen=True)
class Mapper:
    """A device-mapper node for one partition and where it is mounted."""

    node: str  # e.g., /dev/mapper/loop0p1
    mount_point: str  # absolute


class MapperRegistry:
    """Ordered registry of mounted mappers.

    The registry only grows by push() and only shrinks by pop(), which always
    hands back the most recently pushed mapper. Push order is mount order, so
    popping until empty is the teardown order.
    """

    def __init__(self) -> None:
        self._mappers: list[Mapper] = []

    def push(self, mapper: Mapper) -> None:
        self._mappers.append(mapper)

    def pop(self) -> Mapper:
        if not self._mappers:
            raise IndexError("pop from empty mapper registry")
        return self._mappers.pop()

    @property
    def first(self) -> Optional[Mapper]:
        return self._mappers[0] if self._mappers else None

    def __len__(self) -> int:
        return len(self._mappers)

    def __iter__(self) -> Iterator[Mapper]:
        return iter(tuple(self._mappers))

    def __repr__(self) -> str:
        return f"MapperRegistry({self._mappers!r})"


_LOOP_RE = re.compile(r"^/dev/loop(\d+)$")


@dataclass
class LoopDevice:
    path: Optional[str] = None
    mappers: MapperRegistry = field(default_factory=MapperRegistry)

    @property
    def number(self) -> str:
        """Kernel loop number (e.g., "0" for /dev/loop0)."""
        match = _LOOP_RE.match(self.path or "")
        if not match:
            raise ConfigurationError(f"Not a loop device path: {self.path!r}")
        return match.group(1)

    @property
    def amount_of_mappers(self) -> int:
        return len(self.mappers)


# ==============================================================================
# Lifecycle
# ==============================================================================


class ImageState(Enum):
    """Lifecycle state of a disk image engine."""

    CREATED = "created"
    BOUND = "bound"
    FORMATTED = "formatted"
    ATTACHED = "attached"
    CUSTOMIZED = "customized"
    BOOTABLE = "bootable"
    CONVERTED = "converted"
    RELEASED = "released"
    CLEANED_UP = "cleaned up"
    FAILED = "failed"
