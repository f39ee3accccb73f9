"""Loop device and device-mapper management.

A raw image file is exposed as a block device by binding it to a free loop
device (``losetup``). ``kpartx`` then creates one device-mapper node per
partition (``/dev/mapper/loop0p1`` ...). Every node that gets mounted is
recorded in the loop device's MapperRegistry; registration order is the
reverse of the order in which release() unmounts.

All commands go through the injected transport, so the same code drives a
local image or one on a remote host.
"""

from __future__ import annotations

import os
import re
import time
from typing import Callable, Optional

from appliance_disk.config.settings import (
    DEFAULT_KPARTX_PATH,
    DEFAULT_MAPPER_DIR,
    DEFAULT_MAPPER_GRACE_SECONDS,
    get_float,
    get_setting,
)
from appliance_disk.domain.models import LoopDevice, Mapper
from appliance_disk.logging import LoggerFactory
from appliance_disk.storage.commands import RunFunc, command, execute
from appliance_disk.storage.exceptions import (
    CommandExecutionError,
    DeviceBindError,
    NoMappersFoundError,
)


log = LoggerFactory.for_image()
probe_log = LoggerFactory.for_probe()

_NODE_RE = re.compile(r"p(\d+)$")


def absolute_mount_point(working_root: str, relative: str) -> str:
    """Place a partition mount point under the working root.

    "/" maps to the working root itself.
    """
    return os.path.normpath(os.path.join(working_root, relative.lstrip("/")))


def _partition_index(node: str) -> int:
    match = _NODE_RE.search(node)
    return int(match.group(1)) if match else 0


class LoopManager:
    """Binds images to loop devices and mounts their partition mappers."""

    def __init__(
        self,
        run: RunFunc,
        working_root: str,
        loop_device: Optional[LoopDevice] = None,
        *,
        kpartx: Optional[str] = None,
        mapper_dir: Optional[str] = None,
        grace_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.run = run
        self.working_root = working_root
        self.loop_device = loop_device or LoopDevice()
        self.kpartx = kpartx or get_setting("kpartx_path", DEFAULT_KPARTX_PATH)
        self.mapper_dir = mapper_dir or get_setting("mapper_dir", DEFAULT_MAPPER_DIR)
        if grace_seconds is None:
            grace_seconds = get_float("mapper_grace_seconds", DEFAULT_MAPPER_GRACE_SECONDS)
        self.grace_seconds = grace_seconds
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def bind(self, image_path: str) -> str:
        """Attach ``image_path`` to a free loop device and return its path.

        Raises:
            DeviceBindError: If no loop device is free or losetup rejects the file
        """
        try:
            device = (execute(self.run, command("losetup", "-f")) or "").strip()
        except CommandExecutionError as error:
            raise DeviceBindError("Cannot find a free loop device", error.output) from error
        if not device:
            raise DeviceBindError("No free loop device")
        try:
            execute(self.run, command("losetup", device, image_path))
        except CommandExecutionError as error:
            raise DeviceBindError(
                f"Cannot attach {image_path} to {device}", error.output
            ) from error
        log.debug(f"Bound {image_path} to {device}")
        return device

    def detach(self, device: str) -> None:
        execute(self.run, command("losetup", "-d", device))

    # ------------------------------------------------------------------
    # Mappers
    # ------------------------------------------------------------------

    def materialize_mappers(self, loop_path: str) -> list[str]:
        """Create per-partition nodes for ``loop_path`` and list them.

        Waits once for the grace interval because on some distributions the
        nodes show up a moment after kpartx returns.

        Raises:
            NoMappersFoundError: If no partition node appeared
        """
        execute(self.run, command(self.kpartx, "-a", loop_path))
        self._sleep(self.grace_seconds)

        number = LoopDevice(loop_path).number
        output = execute(
            self.run,
            command("find", self.mapper_dir, "-name", f"loop{number}p*"),
        ) or ""
        nodes = sorted(
            (line.strip() for line in output.splitlines() if line.strip()),
            key=_partition_index,
        )
        if not nodes:
            raise NoMappersFoundError(loop_path)
        log.debug(f"Mappers of {loop_path}: {', '.join(nodes)}")
        return nodes

    def detach_mappers(self, loop_path: str) -> None:
        execute(self.run, command(self.kpartx, "-d", loop_path))

    def add_mapper(self, node: str, relative_mount_point: str) -> Mapper:
        """Mount ``node`` under the working root and register it.

        This is the only place mappers are added, so call order here is the
        reverse of the release order.
        """
        mount_point = absolute_mount_point(self.working_root, relative_mount_point)
        execute(self.run, command("mkdir", "-p", mount_point))
        if self.is_mounted(mount_point):
            log.debug(f"{mount_point} is already mounted, registering {node} only")
        else:
            execute(self.run, command("mount", node, mount_point))
        mapper = Mapper(node=node, mount_point=mount_point)
        self.loop_device.mappers.push(mapper)
        log.debug(
            f"Registered mapper {node} at {mount_point} "
            f"({self.loop_device.amount_of_mappers} active)"
        )
        return mapper

    # ------------------------------------------------------------------
    # Mount state
    # ------------------------------------------------------------------

    def is_mounted(self, mount_point: str) -> bool:
        try:
            self.run(command("mountpoint", "-q", mount_point).render())
        except CommandExecutionError:
            probe_log.trace(f"{mount_point} is not mounted")
            return False
        probe_log.trace(f"{mount_point} is mounted")
        return True

    def unmount(self, mount_point: str) -> None:
        execute(self.run, command("umount", "-l", mount_point))
