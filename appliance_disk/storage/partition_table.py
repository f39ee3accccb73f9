"""MBR partition table synthesis for fdisk.

Turns a partition plan into the ordered list of fdisk operations that
creates it, without executing anything. The operations render to the text
fdisk reads on stdin.

Placement follows the four-slot MBR layout:
    - up to four partitions: all primary
    - five or more: sequence 1-3 primary, sequence 4 the extended container,
      sequence 5+ logical drives inside it, numbered from 5

Sizes:
    - absolute megabytes become "+<n>M"
    - percentages resolve to disk_size_mb // 100 * pct (truncating first)
    - "remaining" leaves the last-sector answer empty so fdisk takes the rest;
      only the highest-sequence partition may ask for it
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from appliance_disk.domain.models import (
    EXTENDED_SEQUENCE,
    FIRST_LOGICAL,
    TYPE_CODE_EXTENDED,
    Disk,
    Partition,
)
from appliance_disk.storage.commands import Command
from appliance_disk.storage.exceptions import PartitionPlanError


class PartitionKind(Enum):
    PRIMARY = "p"
    EXTENDED = "e"
    LOGICAL = "l"


@dataclass(frozen=True)
class CreatePartition:
    kind: PartitionKind
    number: int
    size_mb: Optional[int]  # None takes the remaining space

    def render(self) -> str:
        last_sector = f"+{self.size_mb}M" if self.size_mb is not None else ""
        if self.kind is PartitionKind.PRIMARY:
            if self.number == EXTENDED_SEQUENCE:
                # the last free slot is selected without asking
                return f"n\np\n\n{last_sector}\n"
            return f"n\np\n{self.number}\n\n{last_sector}\n"
        if self.kind is PartitionKind.EXTENDED:
            # fdisk picks the last free slot (4) by itself
            return f"n\ne\n\n{last_sector}\n"
        # with all four slots used fdisk adds the next logical drive unasked
        return f"n\n\n{last_sector}\n"


@dataclass(frozen=True)
class SetType:
    number: Optional[int]  # None while only one partition exists
    code: int

    def render(self) -> str:
        if self.number is None:
            return f"t\n{self.code:x}\n"
        return f"t\n{self.number}\n{self.code:x}\n"


@dataclass(frozen=True)
class SetBootable:
    number: int

    def render(self) -> str:
        return f"a\n{self.number}\n"


@dataclass(frozen=True)
class NewLabel:
    def render(self) -> str:
        return "o\n"


@dataclass(frozen=True)
class Write:
    def render(self) -> str:
        return "w\n"


Operation = Union[NewLabel, CreatePartition, SetType, SetBootable, Write]


@dataclass(frozen=True)
class PartitionTable:
    operations: tuple[Operation, ...]

    @property
    def created(self) -> list[CreatePartition]:
        return [op for op in self.operations if isinstance(op, CreatePartition)]

    def render(self) -> str:
        return "".join(op.render() for op in self.operations)


def validate_plan(disk: Disk) -> None:
    """Reject plans fdisk cannot build.

    Raises:
        PartitionPlanError: If the plan is empty, sequences are not 1..N,
            or the remaining-space marker is misplaced
    """
    partitions = disk.partitions
    if not partitions:
        raise PartitionPlanError("Partition plan is empty")

    sequences = [part.sequence for part in partitions]
    expected = list(range(1, len(partitions) + 1))
    if sorted(sequences) != expected:
        raise PartitionPlanError(
            f"Partition sequences must be 1..{len(partitions)}, got {sequences}"
        )

    remaining = [part for part in partitions if part.size.is_remaining]
    if len(remaining) > 1:
        raise PartitionPlanError(
            "Only one partition may consume the remaining space, got "
            + ", ".join(str(part.sequence) for part in remaining)
        )
    if remaining and remaining[0].sequence != len(partitions):
        raise PartitionPlanError(
            f"Partition {remaining[0].sequence} consumes the remaining space "
            f"but is not the last partition"
        )

    if disk.bootable and disk.active_partition not in sequences:
        raise PartitionPlanError(
            f"Active partition {disk.active_partition} is not part of the plan"
        )

    for part in partitions:
        size_mb = part.size.resolve(disk.size_mb)
        if size_mb is not None and size_mb <= 0:
            raise PartitionPlanError(
                f"Partition {part.sequence} resolves to {size_mb}MB on a "
                f"{disk.size_mb}MB disk"
            )


def _placement(
    part: Partition, amount: int, logical_number: int
) -> tuple[PartitionKind, int]:
    if part.sequence < EXTENDED_SEQUENCE or amount < FIRST_LOGICAL:
        return PartitionKind.PRIMARY, part.sequence
    if part.sequence == EXTENDED_SEQUENCE:
        return PartitionKind.EXTENDED, EXTENDED_SEQUENCE
    return PartitionKind.LOGICAL, logical_number


def synthesize(disk: Disk) -> PartitionTable:
    """Build the fdisk operations for ``disk.partitions``.

    Raises:
        PartitionPlanError: If the plan is invalid (see validate_plan)
    """
    validate_plan(disk)

    amount = len(disk.partitions)
    operations: list[Operation] = [NewLabel()]
    logical_number = FIRST_LOGICAL
    for index, part in enumerate(disk.partitions):
        kind, number = _placement(part, amount, logical_number)
        if kind is PartitionKind.LOGICAL:
            logical_number += 1
        code = part.code
        if kind is PartitionKind.EXTENDED and part.type_code is None:
            code = TYPE_CODE_EXTENDED
        operations.append(CreatePartition(kind, number, part.size.resolve(disk.size_mb)))
        # the first partition is selected implicitly, later ones by number
        operations.append(SetType(None if index == 0 else number, code))

    if disk.bootable:
        operations.append(SetBootable(disk.active_partition))

    operations.append(Write())
    return PartitionTable(tuple(operations))


def fdisk_script(disk: Disk) -> str:
    """Return the literal script from the topology, or a synthesized one."""
    if disk.fdisk_script:
        # legacy topology files store escaped newlines
        return disk.fdisk_script.replace("\\n", "\n")
    return synthesize(disk).render()


def fdisk_command(disk: Disk, loop_device: str) -> Command:
    """The fdisk invocation that writes the partition table to ``loop_device``.

    fdisk's exit status is not trusted on loop devices (re-reading the table
    fails on many kernels); the caller verifies the materialized partition
    count instead.
    """
    return Command(
        "fdisk",
        (loop_device,),
        input_text=fdisk_script(disk),
        tolerate_failure=True,
    )
