"""Partitioning, formatting and mounting of a bound disk image.

Two entry modes:
    format_and_mount(): fresh image - write the partition table, create the
        filesystems, mount everything under the working root
    attach(): existing image - reuse its partition table and just mount

In both modes the root partition ("/") is mounted first, at the working
root itself, so the other partitions can be mounted beneath it. Swap
partitions are initialized with mkswap (format mode only) and never mounted.
The extended container of a five-or-more partition plan holds only the
logical drives, so it is neither formatted nor mounted.

The number of mapper nodes the kernel exposes must equal the number of
partitions in the plan; a mismatch stops the run before any mkfs or mount.
"""

from __future__ import annotations

from appliance_disk.domain.models import (
    EXTENDED_SEQUENCE,
    FIRST_LOGICAL,
    ROOT_MOUNT_POINT,
    Disk,
    Partition,
)
from appliance_disk.logging import LoggerFactory
from appliance_disk.storage.commands import RunFunc, command, execute
from appliance_disk.storage.exceptions import PartitionCountMismatchError
from appliance_disk.storage.loop import LoopManager
from appliance_disk.storage.partition_table import fdisk_command


log = LoggerFactory.for_image()


class MountOrchestrator:
    def __init__(self, run: RunFunc, disk: Disk, loop: LoopManager) -> None:
        self.run = run
        self.disk = disk
        self.loop = loop

    def format_and_mount(self, loop_path: str) -> None:
        """Partition, format and mount a freshly allocated image."""
        if not self.disk.partitions:
            return
        execute(self.run, fdisk_command(self.disk, loop_path))
        mappers = self._materialize(loop_path)

        # first pass: root, mounted at the working root
        for node, part in zip(mappers, self.disk.partitions):
            if part.is_root and not part.is_swap:
                self._make_filesystem(node, part)
                self.loop.add_mapper(node, ROOT_MOUNT_POINT)

        # second pass: everything else
        for node, part in zip(mappers, self.disk.partitions):
            if self._is_container(part):
                continue
            if part.is_swap:
                self._make_swap(node, part)
            elif not part.is_root:
                self._make_filesystem(node, part)
                if part.mount_point:
                    self.loop.add_mapper(node, part.mount_point)

    def attach(self, loop_path: str) -> None:
        """Mount the partitions of an image that is already partitioned."""
        if not self.disk.partitions:
            return
        mappers = self._materialize(loop_path)

        for node, part in zip(mappers, self.disk.partitions):
            if part.is_root and not part.is_swap:
                self.loop.add_mapper(node, ROOT_MOUNT_POINT)

        for node, part in zip(mappers, self.disk.partitions):
            if part.mount_point and not (
                part.is_swap or part.is_root or self._is_container(part)
            ):
                self.loop.add_mapper(node, part.mount_point)

    def _is_container(self, part: Partition) -> bool:
        return (
            part.sequence == EXTENDED_SEQUENCE
            and len(self.disk.partitions) >= FIRST_LOGICAL
        )

    def _materialize(self, loop_path: str) -> list[str]:
        mappers = self.loop.materialize_mappers(loop_path)
        if len(mappers) != len(self.disk.partitions):
            raise PartitionCountMismatchError(len(self.disk.partitions), len(mappers))
        return mappers

    def _make_filesystem(self, node: str, part: Partition) -> None:
        log.info(f"Creating {part.filesystem} filesystem on {node} ({part.label or 'no label'})")
        args = ["-t", part.filesystem]
        if part.label:
            args += ["-L", part.label]
        args += part.mkfs_args
        execute(self.run, command("mkfs", *args, node))

    def _make_swap(self, node: str, part: Partition) -> None:
        log.info(f"Initializing swap on {node}")
        args = ["-L", part.label] if part.label else []
        execute(self.run, command("mkswap", *args, node))
