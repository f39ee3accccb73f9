"""Image builder service.

Runs a whole build for one disk: allocate/parse, customize, make bootable,
convert, release and clean up, then optionally compress the result into a
tarball next to the image.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from appliance_disk.domain.models import Disk
from appliance_disk.logging import operation_context
from appliance_disk.storage.commands import RunFunc, command, execute_all, local_run
from appliance_disk.storage.image import DiskImage, Filler
from appliance_disk.storage.remote import RemoteConfig, SshfsBridge, ssh_runner
from appliance_disk.storage.shutdown import ShutdownScope


COMPRESSED_SUFFIX = ".tgz"


class ArtifactType(Enum):
    IMAGE = "image"


@dataclass(frozen=True)
class Artifact:
    name: str
    path: str
    type: ArtifactType = ArtifactType.IMAGE


class CommandFiller:
    """Filler that shells out to user-supplied commands.

    Each command gets the root filesystem path appended as its last argument.
    """

    def __init__(
        self,
        rootfs_command: str,
        app_command: Optional[str] = None,
        run: RunFunc = local_run,
    ) -> None:
        self.rootfs_command = rootfs_command
        self.app_command = app_command
        self.run = run

    def make_rootfs(self, root: str) -> None:
        self.run(f"{self.rootfs_command} {shlex.quote(root)}")

    def install_app(self, root: str) -> None:
        if self.app_command:
            self.run(f"{self.app_command} {shlex.quote(root)}")


class ImageBuilder:
    def __init__(
        self,
        disk: Disk,
        rootfs_mp: str,
        filler: Optional[Filler] = None,
        run: Optional[RunFunc] = None,
        remote: Optional[RemoteConfig] = None,
        compress: bool = False,
        local: RunFunc = local_run,
    ) -> None:
        self.disk = disk
        self.rootfs_mp = rootfs_mp
        self.filler = filler
        self.remote = remote
        self.compress = compress
        self.local = local
        if run is None:
            run = ssh_runner(remote, local) if remote else local
        self.transport = run

    def run(self) -> Artifact:
        """Build the image and return the resulting artifact."""
        with operation_context("build", image=self.disk.path) as log:
            bridge = SshfsBridge(self.remote, self.local, self.transport) if self.remote else None
            image = DiskImage(self.disk, self.rootfs_mp, self.transport, bridge)
            with ShutdownScope(image):
                image.parse()
                if self.filler is not None:
                    image.customize(self.filler)
                image.make_bootable()
                path = image.convert()

            name = os.path.basename(path)
            if self.compress:
                path = self._compress(path)
            log.info(f"Artifact {name} written to {path}")
            return Artifact(name=name, path=path)

    def _compress(self, path: str) -> str:
        directory, name = os.path.split(path)
        archive = os.path.join(directory, name + COMPRESSED_SUFFIX)
        execute_all(
            self.transport,
            [
                command("tar", "cfzp", archive, "-C", directory or ".", name),
                command("rm", "-f", path),
            ],
        )
        return archive
