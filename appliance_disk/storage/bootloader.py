"""Bootloader installation strategies.

One strategy is chosen per image from ``Disk.bootloader``:

    GRUB      Legacy GRUB. The grub shell found inside the mounted root is fed
              a device/root/setup script addressed at the raw image file.
    GRUB2     grub-install inside a chroot. A second, throwaway loop device is
              bound to the root partition and mounted at a temporary directory
              so grub sees a device.map of (hd0) -> disk, (hd0,1) -> partition.
              Lines mentioning loop devices are stripped from grub.cfg
              afterwards so the installed config never references the build
              host's devices.
    EXTLINUX  SYSLINUX family. The 440-byte MBR stub is written to the loop
              device (partition table untouched) and extlinux is installed
              into /boot/extlinux from inside the chroot.
    NONE      Nothing to do.

Temporary mounts and loop devices a strategy creates are torn down by an
ExitStack whether the install succeeds or not. Any failed command surfaces as
BootloaderInstallError carrying the command's captured output.
"""

from __future__ import annotations

import os
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Optional

from appliance_disk.domain.models import BootLoader, Mapper
from appliance_disk.logging import LoggerFactory
from appliance_disk.storage.commands import (
    Command,
    RunFunc,
    chroot_command,
    command,
    execute,
)
from appliance_disk.storage.exceptions import (
    BootloaderInstallError,
    BootloaderNotFoundError,
    CommandExecutionError,
    DeviceBindError,
)
from appliance_disk.storage.loop import LoopManager


log = LoggerFactory.for_bootloader()

GRUB_FILE_NOT_FOUND = "Error 15: File not found"
EXTLINUX_MBR_PATHS = ("/usr/lib/EXTLINUX/mbr.bin", "/usr/lib/extlinux/mbr.bin")
EXTLINUX_DIR = "/boot/extlinux"
MBR_STUB_SIZE = 440


@dataclass(frozen=True)
class BootContext:
    run: RunFunc
    working_root: str
    loop_device: str
    image_path: str
    first_mapper: Optional[Mapper]
    loop: LoopManager


def _host_path(root: str, path: str) -> str:
    return os.path.join(root, path.lstrip("/"))


def _step(ctx: BootContext, cmd: Command, what: str) -> Optional[str]:
    try:
        return execute(ctx.run, cmd)
    except CommandExecutionError as error:
        raise BootloaderInstallError(what, str(error)) from error


def _which(ctx: BootContext, root: str, tool: str) -> str:
    try:
        path = (execute(ctx.run, command("chroot", root, "which", tool)) or "").strip()
    except CommandExecutionError as error:
        raise BootloaderNotFoundError(f"{tool} not found in {root}", error.output) from error
    if not path:
        raise BootloaderNotFoundError(f"{tool} not found in {root}")
    return path


def _exists(ctx: BootContext, path: str) -> bool:
    try:
        ctx.run(command("ls", path).render())
    except CommandExecutionError:
        return False
    return True


class NoBootloader:
    kind = BootLoader.NONE

    def install(self, ctx: BootContext) -> None:
        log.info("No bootloader configured, skipping")


class LegacyGrubInstaller:
    kind = BootLoader.GRUB

    def install(self, ctx: BootContext) -> None:
        grub = _host_path(ctx.working_root, _which(ctx, ctx.working_root, "grub"))
        script = f"device (hd0) {ctx.image_path}\nroot (hd0,0)\nsetup (hd0)\n"
        log.info(f"Installing GRUB to {ctx.image_path}")
        output = _step(ctx, Command(grub, input_text=script), "Installing GRUB") or ""
        if GRUB_FILE_NOT_FOUND in output:
            raise BootloaderInstallError("Installing GRUB", GRUB_FILE_NOT_FOUND)


class Grub2Installer:
    kind = BootLoader.GRUB2

    def install(self, ctx: BootContext) -> None:
        if ctx.first_mapper is None:
            raise BootloaderInstallError("Installing GRUB2", "no mounted partition to install from")

        with ExitStack() as cleanup:
            try:
                dummy = ctx.loop.bind(ctx.first_mapper.node)
            except DeviceBindError as error:
                raise BootloaderInstallError("Installing GRUB2", str(error)) from error
            cleanup.callback(
                execute, ctx.run, command("losetup", "-d", dummy, tolerate_failure=True)
            )

            mount_dir = (
                _step(
                    ctx,
                    command("mktemp", "-d", "--suffix", "_dummy_loop"),
                    "Creating GRUB2 mount point",
                )
                or ""
            ).strip()
            _step(ctx, command("mount", dummy, mount_dir), "Mounting GRUB2 device")
            cleanup.callback(self._teardown, ctx, mount_dir)

            grub_dir = _host_path(mount_dir, "/boot/grub")
            device_map = f"(hd0) {ctx.loop_device}\n(hd0,1) {dummy}\n"
            log.info(f"Installing GRUB2 to {ctx.loop_device} via {dummy}")
            steps = [
                command("mkdir", "-p", grub_dir),
                Command("tee", (f"{grub_dir}/device.map",), input_text=device_map),
                command("mount", "--bind", "/dev", _host_path(mount_dir, "/dev")),
                chroot_command(mount_dir, "mount", "-t", "proc", "none", "/proc"),
                chroot_command(
                    mount_dir,
                    "grub-install",
                    "--no-floppy",
                    "--grub-mkdevicemap=/boot/grub/device.map",
                    ctx.loop_device,
                ),
                chroot_command(mount_dir, "update-grub"),
                command("rm", "-f", f"{grub_dir}/device.map"),
                command("sed", "-i", "/loop/d", f"{grub_dir}/grub.cfg"),
            ]
            for cmd in steps:
                _step(ctx, cmd, "Installing GRUB2")

    @staticmethod
    def _teardown(ctx: BootContext, mount_dir: str) -> None:
        for cmd in (
            command(
                "umount",
                "-l",
                _host_path(mount_dir, "/proc"),
                _host_path(mount_dir, "/dev"),
                tolerate_failure=True,
            ),
            command("umount", "-f", mount_dir, tolerate_failure=True),
            # rmdir refuses a still-mounted or non-empty directory
            command("rmdir", mount_dir, tolerate_failure=True),
        ):
            execute(ctx.run, cmd)


class ExtlinuxInstaller:
    kind = BootLoader.EXTLINUX

    def install(self, ctx: BootContext) -> None:
        root = ctx.working_root
        _which(ctx, root, "extlinux")

        mbr = next(
            (path for path in EXTLINUX_MBR_PATHS if _exists(ctx, _host_path(root, path))),
            None,
        )
        if mbr is None:
            raise BootloaderNotFoundError("Extlinux mbr binary not found")

        with ExitStack() as cleanup:
            cleanup.callback(
                execute,
                ctx.run,
                command(
                    "umount",
                    "-l",
                    _host_path(root, "/proc"),
                    _host_path(root, "/dev"),
                    tolerate_failure=True,
                ),
            )
            log.info(f"Installing EXTLINUX to {ctx.loop_device} using {mbr}")
            steps = [
                command("mount", "--bind", "/dev", _host_path(root, "/dev")),
                chroot_command(root, "mount", "-t", "proc", "none", "/proc"),
                chroot_command(
                    root,
                    "dd",
                    f"if={mbr}",
                    f"of={ctx.loop_device}",
                    f"bs={MBR_STUB_SIZE}",
                    "count=1",
                    "conv=notrunc",
                ),
                chroot_command(root, "extlinux", "-i", EXTLINUX_DIR),
                chroot_command(root, "extlinux-update", tolerate_failure=True),
            ]
            for cmd in steps:
                _step(ctx, cmd, "Installing EXTLINUX")


_INSTALLERS = {
    BootLoader.NONE: NoBootloader,
    BootLoader.GRUB: LegacyGrubInstaller,
    BootLoader.GRUB2: Grub2Installer,
    BootLoader.EXTLINUX: ExtlinuxInstaller,
}


def installer_for(kind: BootLoader):
    """Return the installer strategy for ``kind``."""
    return _INSTALLERS[kind]()
