"""Remote-bridge support: sshfs mounts, helper uploads and an ssh transport.

In remote-bridge mode the disk image lives on another host. Commands run
there over ssh, and the remote working root is mounted locally with sshfs so
the filler can populate it as if it were local. Helper binaries the remote
host may lack (kpartx) are copied to a remote staging directory first.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from typing import Iterable, Optional

from appliance_disk.logging import LoggerFactory
from appliance_disk.storage.commands import RunFunc, command, execute, local_run
from appliance_disk.storage.exceptions import CommandExecutionError, RemoteBridgeError


log = LoggerFactory.for_remote()


@dataclass(frozen=True)
class RemoteConfig:
    host: str
    user: str = "root"
    port: int = 22
    identity_file: Optional[str] = None

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"

    def ssh_options(self, port_flag: str = "-p") -> list[str]:
        options = ["-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new"]
        options += [port_flag, str(self.port)]
        if self.identity_file:
            options += ["-i", self.identity_file]
        return options


def ssh_runner(config: RemoteConfig, local: RunFunc = local_run) -> RunFunc:
    """Return a transport that runs each command on ``config.host``."""
    prefix = shlex.join(["ssh", *config.ssh_options(), config.destination])

    def run(command_line: str) -> str:
        return local(f"{prefix} {shlex.quote(command_line)}")

    return run


class SshfsBridge:
    """Mounts a remote directory locally and stages helper binaries remotely."""

    def __init__(
        self,
        config: RemoteConfig,
        local: RunFunc = local_run,
        remote: Optional[RunFunc] = None,
    ) -> None:
        self.config = config
        self.local = local
        self.remote = remote or ssh_runner(config, local)

    def attach(self, remote_path: str, local_path: str) -> None:
        options = ["-p", str(self.config.port)]
        if self.config.identity_file:
            options += ["-o", f"IdentityFile={self.config.identity_file}"]
        try:
            execute(self.local, command("mkdir", "-p", local_path))
            execute(
                self.local,
                command(
                    "sshfs",
                    f"{self.config.destination}:{remote_path}",
                    local_path,
                    *options,
                ),
            )
        except CommandExecutionError as error:
            raise RemoteBridgeError(
                f"Cannot mount {self.config.host}:{remote_path} at {local_path}",
                error.output,
            ) from error
        log.info(f"Attached {self.config.host}:{remote_path} at {local_path}")

    def detach(self, local_path: str) -> None:
        try:
            execute(self.local, command("fusermount", "-u", local_path))
        except CommandExecutionError as error:
            raise RemoteBridgeError(f"Cannot unmount {local_path}", error.output) from error
        log.info(f"Detached {local_path}")

    def upload_binaries(self, paths: Iterable[str]) -> str:
        """Copy ``paths`` to a fresh remote directory and return its path."""
        try:
            staging = (
                execute(self.remote, command("mktemp", "-d", "--suffix", "_helpers")) or ""
            ).strip()
            for path in paths:
                execute(
                    self.local,
                    command(
                        "scp",
                        *self.config.ssh_options(port_flag="-P"),
                        path,
                        f"{self.config.destination}:{staging}/{os.path.basename(path)}",
                    ),
                )
        except CommandExecutionError as error:
            raise RemoteBridgeError("Cannot upload helper binaries", error.output) from error
        log.debug(f"Helper binaries staged in {staging}")
        return staging
