"""Disk image lifecycle engine.

``DiskImage`` owns one raw image file and every kernel resource built on top
of it. A build walks these states:

    CREATED -> BOUND -> FORMATTED | ATTACHED -> CUSTOMIZED -> BOOTABLE
            -> CONVERTED -> RELEASED -> CLEANED_UP

Any failing step moves the image to FAILED; release() and cleanup() are
still allowed afterwards, and are what the caller (or a ShutdownScope) must
run to get rid of loop devices and mounts.

Release order:
    1. detach the sshfs bridge (remote mode)
    2. unmount registered mappers, newest first, leaving the working root
    3. unmount the working root
    4. kpartx -d, losetup -d

Release is idempotent and guarded by a non-blocking lock, so an interrupt
arriving during a normal release neither deadlocks nor releases twice.

Example:
    >>> image = DiskImage(disk, "/tmp/rootfs")
    >>> image.parse()
    >>> image.customize(filler)
    >>> image.make_bootable()
    >>> image.convert()
    >>> image.release()
    >>> image.cleanup()
"""

from __future__ import annotations

import os
import posixpath
import shutil
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterable, Optional, Protocol

from appliance_disk.config.settings import DEFAULT_KPARTX_PATH, get_setting
from appliance_disk.domain.models import Disk, ImageState, LoopDevice, StorageType
from appliance_disk.logging import LoggerFactory
from appliance_disk.storage.bootloader import BootContext, installer_for
from appliance_disk.storage.commands import RunFunc, command, execute, local_run
from appliance_disk.storage.convert import RAW_SUFFIX, convert_image
from appliance_disk.storage.exceptions import (
    CommandExecutionError,
    EmptyMapperError,
    InvalidStateError,
    RemoteBridgeError,
    ToolNotFoundError,
)
from appliance_disk.storage.loop import LoopManager
from appliance_disk.storage.mount import MountOrchestrator
from appliance_disk.storage.remote import SshfsBridge


class Filler(Protocol):
    """Populates a mounted root filesystem with an OS and an application."""

    def make_rootfs(self, root: str) -> None: ...

    def install_app(self, root: str) -> None: ...


_PARSED = (ImageState.FORMATTED, ImageState.ATTACHED)


def raw_image_path(disk: Disk) -> str:
    """Path of the raw working file for ``disk``.

    appliance.qcow2 -> appliance.raw, appliance -> appliance.raw
    """
    path = disk.path
    suffix = f".{disk.storage_type.value}"
    if disk.storage_type is not StorageType.RAW and path.endswith(suffix):
        path = path[: -len(suffix)]
    if not path.endswith(RAW_SUFFIX):
        path += RAW_SUFFIX
    return path


class DiskImage:
    def __init__(
        self,
        disk: Disk,
        rootfs_mp: str,
        run: RunFunc = local_run,
        bridge: Optional[SshfsBridge] = None,
        *,
        kpartx: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.disk = disk
        self.run = run
        self.bridge = bridge
        self.state = ImageState.CREATED
        self.loop_device = LoopDevice()
        self.local_mount: Optional[str] = None
        self.helpers_dir: Optional[str] = None
        self.needs_format = False
        self.log = LoggerFactory.for_image(image=disk.name or disk.path)

        self._release_lock = threading.Lock()
        self._released = False
        self._cleaned = False
        self._bridge_attached = False

        if disk.storage_type is not StorageType.RAW:
            try:
                execute(run, command("which", "qemu-img"))
            except CommandExecutionError as error:
                where = "remote host" if bridge else "local host"
                raise ToolNotFoundError("qemu-img", where) from error

        kpartx = kpartx or get_setting("kpartx_path", DEFAULT_KPARTX_PATH)
        if bridge is None:
            self.working_root = rootfs_mp
            execute(run, command("mkdir", "-p", rootfs_mp))
        else:
            self.local_mount = rootfs_mp
            self.working_root = (
                execute(run, command("mktemp", "-d", "--suffix", "_rootfs")) or ""
            ).strip()
            bridge.attach(self.working_root, rootfs_mp)
            self._bridge_attached = True

        # nothing after the attach may leave the sshfs mount behind
        try:
            if bridge is not None:
                local_kpartx = shutil.which(kpartx) or kpartx
                self.helpers_dir = bridge.upload_binaries([local_kpartx])
                kpartx = posixpath.join(self.helpers_dir, os.path.basename(local_kpartx))

            self.path = raw_image_path(disk)
            if not self._exists(self.path):
                self._create()
                self.needs_format = bool(disk.partitions)
        except Exception:
            self._abandon_bridge()
            raise

        self.loop = LoopManager(run, self.working_root, self.loop_device, kpartx=kpartx, sleep=sleep)
        self.mounts = MountOrchestrator(run, disk, self.loop)

    # ------------------------------------------------------------------
    # Public lifecycle
    # ------------------------------------------------------------------

    @property
    def amount_of_mappers(self) -> int:
        return self.loop_device.amount_of_mappers

    @property
    def customization_root(self) -> str:
        """Where the filler sees the image's root filesystem."""
        return self.local_mount or self.working_root

    def bind(self) -> str:
        """Attach the raw file to a loop device."""
        with self._step("bind", (ImageState.CREATED,), ImageState.BOUND):
            self.loop_device.path = self.loop.bind(self.path)
        return self.loop_device.path

    def parse(self) -> None:
        """Bind if needed, then format-and-mount or attach the partitions."""
        if self.state is ImageState.CREATED:
            self.bind()
        target = ImageState.FORMATTED if self.needs_format else ImageState.ATTACHED
        with self._step("parse", (ImageState.BOUND,), target):
            if self.needs_format:
                self.mounts.format_and_mount(self.loop_device.path)
            else:
                self.mounts.attach(self.loop_device.path)

    def customize(self, filler: Filler) -> None:
        """Let ``filler`` populate the mounted root filesystem.

        Raises:
            EmptyMapperError: If nothing is mounted (parse() was not called)
        """
        if self.amount_of_mappers == 0:
            raise EmptyMapperError()
        with self._step("customize", _PARSED, ImageState.CUSTOMIZED):
            root = self.customization_root
            filler.make_rootfs(root)
            filler.install_app(root)

    def make_bootable(self) -> None:
        allowed = _PARSED + (ImageState.CUSTOMIZED,)
        with self._step("make bootable", allowed, ImageState.BOOTABLE):
            context = BootContext(
                run=self.run,
                working_root=self.working_root,
                loop_device=self.loop_device.path,
                image_path=self.path,
                first_mapper=self.loop_device.mappers.first,
                loop=self.loop,
            )
            installer_for(self.disk.bootloader).install(context)

    def convert(self) -> str:
        """Convert the raw image to the configured format; returns the new path."""
        allowed = _PARSED + (ImageState.CUSTOMIZED, ImageState.BOOTABLE)
        with self._step("convert", allowed, ImageState.CONVERTED):
            self.path = convert_image(self.run, self.path, self.disk.storage_type)
        return self.path

    def release(self) -> bool:
        """Unmount everything and give back the loop device.

        Returns False when there was nothing to do (already released, or
        another release is running right now).
        """
        if not self._release_lock.acquire(blocking=False):
            self.log.warning("Release already in progress")
            return False
        try:
            if self._released:
                return False
            self._release()
            self._released = True
            if self.state is not ImageState.FAILED:
                self.state = ImageState.RELEASED
            self.log.info(f"Released {self.path}")
            return True
        finally:
            self._release_lock.release()

    def cleanup(self) -> None:
        """Remove the working root and, in remote mode, the staging directories."""
        if self._cleaned:
            return
        if self.loop_device.path is not None:
            raise InvalidStateError("clean up", f"still bound to {self.loop_device.path}")
        execute(self.run, command("rm", "-rf", self.working_root))
        if self.bridge is not None:
            if self.helpers_dir:
                execute(self.run, command("rm", "-rf", self.helpers_dir))
            if self.local_mount:
                execute(self.bridge.local, command("rm", "-rf", self.local_mount))
        self._cleaned = True
        if self.state is not ImageState.FAILED:
            self.state = ImageState.CLEANED_UP
        self.log.info("Cleanup completed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _step(self, operation: str, allowed: Iterable[ImageState], target: ImageState):
        if self.state not in tuple(allowed):
            raise InvalidStateError(operation, self.state.value)
        try:
            yield
        except Exception as error:
            self.state = ImageState.FAILED
            self.log.error(f"Failed to {operation}: {error}")
            raise
        self.state = target
        self.log.info(f"Image {target.value}")

    def _release(self) -> None:
        if self._bridge_attached:
            self.bridge.detach(self.local_mount)
            self._bridge_attached = False

        failures: list[CommandExecutionError] = []
        registry = self.loop_device.mappers
        while len(registry) > 0:
            mapper = registry.pop()
            if mapper.mount_point == self.working_root:
                continue
            failures += self._unmount(mapper.mount_point)
        failures += self._unmount(self.working_root)
        if failures:
            raise failures[0]

        if self.loop_device.path is not None:
            self.loop.detach_mappers(self.loop_device.path)
            self.loop.detach(self.loop_device.path)
            self.loop_device.path = None

    def _abandon_bridge(self) -> None:
        if not self._bridge_attached:
            return
        try:
            self.bridge.detach(self.local_mount)
        except RemoteBridgeError as error:
            self.log.error(f"Cannot detach {self.local_mount}: {error}")
            return
        self._bridge_attached = False

    def _unmount(self, mount_point: str) -> list[CommandExecutionError]:
        try:
            if self.loop.is_mounted(mount_point):
                self.loop.unmount(mount_point)
        except CommandExecutionError as error:
            self.log.error(f"Cannot unmount {mount_point}: {error}")
            return [error]
        return []

    def _exists(self, path: str) -> bool:
        try:
            self.run(command("ls", path).render())
        except CommandExecutionError:
            return False
        return True

    def _create(self) -> None:
        self.log.info(f"Allocating {self.disk.size_mb}MB raw image at {self.path}")
        execute(
            self.run,
            command(
                "dd",
                "if=/dev/zero",
                f"of={self.path}",
                "count=1",
                "bs=1",
                f"seek={self.disk.size_mb}M",
            ),
        )
