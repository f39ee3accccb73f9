"""Structured shell commands and the local execution transport.

Engine code never concatenates shell strings by hand. It builds ``Command``
objects (tool, arguments, optional stdin text, failure tolerance) and hands
them to ``execute()``, which renders them once at the transport boundary.
The transport is any callable ``run(command: str) -> str`` that raises
``CommandExecutionError`` on a non-zero exit; ``local_run`` is the default,
``remote.ssh_runner`` executes on a remote host.

Example:
    >>> cmd = Command("mkfs", ("-t", "ext4", "-L", "SLASH", "/dev/mapper/loop0p1"))
    >>> cmd.render()
    'mkfs -t ext4 -L SLASH /dev/mapper/loop0p1'
    >>> Command("fdisk", ("/dev/loop0",), input_text="o\\nw\\n").render()
    "printf '%s' 'o\\nw\\n' | fdisk /dev/loop0"
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from typing import Callable, Optional

from appliance_disk.config.settings import DEFAULT_CHROOT_PATH, get_setting
from appliance_disk.logging import LoggerFactory
from appliance_disk.storage.exceptions import CommandExecutionError


log = LoggerFactory.for_commands()

RunFunc = Callable[[str], str]


@dataclass(frozen=True)
class Command:
    tool: str
    args: tuple[str, ...] = ()
    input_text: Optional[str] = None
    tolerate_failure: bool = False

    def render(self) -> str:
        rendered = shlex.join([self.tool, *self.args])
        if self.input_text is not None:
            return f"printf '%s' {shlex.quote(self.input_text)} | {rendered}"
        return rendered

    def __str__(self) -> str:
        return self.render()


def command(tool: str, *args: object, input_text: Optional[str] = None,
            tolerate_failure: bool = False) -> Command:
    """Shorthand for building a Command from loose arguments."""
    return Command(
        tool,
        tuple(str(arg) for arg in args),
        input_text=input_text,
        tolerate_failure=tolerate_failure,
    )


def chroot_command(root: str, tool: str, *args: object,
                   tolerate_failure: bool = False) -> Command:
    """Run ``tool`` inside ``root`` with a predictable locale and PATH."""
    chroot_path = get_setting("chroot_path", DEFAULT_CHROOT_PATH)
    return command(
        "chroot",
        root,
        "env",
        "LC_ALL=C",
        f"PATH={chroot_path}",
        tool,
        *args,
        tolerate_failure=tolerate_failure,
    )


def execute(run: RunFunc, cmd: Command) -> Optional[str]:
    """Execute a command through the transport.

    Returns the command output, or None when a tolerated command failed.

    Raises:
        CommandExecutionError: If the command failed and is not tolerated
    """
    rendered = cmd.render()
    try:
        return run(rendered)
    except CommandExecutionError as error:
        if cmd.tolerate_failure:
            log.debug(f"Ignoring failure of tolerated command: {error}")
            return None
        raise


def execute_all(run: RunFunc, commands: list[Command]) -> list[Optional[str]]:
    """Execute commands in order, stopping at the first untolerated failure."""
    return [execute(run, cmd) for cmd in commands]


def local_run(command_line: str) -> str:
    """Run a shell command on this host and return its stdout.

    Raises:
        CommandExecutionError: If the command exits non-zero; carries
            the combined stdout/stderr
    """
    log.debug(f"Running command: {command_line}")
    result = subprocess.run(
        command_line,
        shell=True,
        text=True,
        capture_output=True,
        encoding="utf-8",
        errors="replace",
    )
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        output = "\n".join(part for part in (stdout, stderr) if part)
        log.debug(f"Command failed with code {result.returncode}: {output}")
        raise CommandExecutionError(command_line, output, result.returncode)
    if result.stderr:
        log.debug(f"stderr: {result.stderr.strip()}")
    return result.stdout


__all__ = [
    "Command",
    "RunFunc",
    "chroot_command",
    "command",
    "execute",
    "execute_all",
    "local_run",
]
