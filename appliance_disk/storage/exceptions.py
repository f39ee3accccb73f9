"""Custom exceptions for disk image operations.

This module defines a hierarchy of exceptions for the disk image lifecycle so
callers can tell configuration mistakes, kernel device failures and bootloader
problems apart. Every error raised after a failed shell command carries the
command's captured output so failures can be diagnosed without a re-run.

Exception Hierarchy:
    ImageError (base)
        ├── CommandExecutionError
        ├── ConfigurationError
        │   ├── PartitionPlanError
        │   └── TopologyNotFoundError
        ├── DeviceError
        │   ├── DeviceBindError
        │   ├── NoMappersFoundError
        │   └── PartitionCountMismatchError
        ├── MountError
        │   └── EmptyMapperError
        ├── BootloaderError
        │   ├── BootloaderNotFoundError
        │   └── BootloaderInstallError
        ├── ToolNotFoundError
        ├── ConversionError
        ├── RemoteBridgeError
        └── InvalidStateError

Usage:
    from appliance_disk.storage.exceptions import PartitionCountMismatchError

    if len(nodes) != len(disk.partitions):
        raise PartitionCountMismatchError(len(disk.partitions), len(nodes))
"""

from __future__ import annotations

from typing import Optional


def _with_output(message: str, output: str = "") -> str:
    output = (output or "").strip()
    if output:
        return f"{message}: {output}"
    return message


class ImageError(Exception):
    """Base exception for all disk image operations."""


class CommandExecutionError(ImageError):
    """A shell command exited with a non-zero status."""

    def __init__(self, command: str, output: str = "", returncode: Optional[int] = None):
        self.command = command
        self.output = output or ""
        self.returncode = returncode
        status = f"exit status {returncode}" if returncode is not None else "failed"
        detail = self.output.strip()
        if detail:
            super().__init__(f"{detail} [{command}: {status}]")
        else:
            super().__init__(f"[{command}: {status}]")


class ConfigurationError(ImageError, ValueError):
    """The disk configuration is invalid."""


class PartitionPlanError(ConfigurationError):
    """The partition plan cannot be synthesized into a partition table."""


class TopologyNotFoundError(ConfigurationError):
    """No topology matches the requested name or index."""

    def __init__(self, key: object):
        self.key = key
        super().__init__(f"No topology found for {key!r}")


class DeviceError(ImageError):
    """Base exception for loop and mapper device errors."""


class DeviceBindError(DeviceError):
    """A loop device could not be allocated or attached."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(_with_output(message, output))


class NoMappersFoundError(DeviceError):
    """The device-mapper helper produced no partition nodes."""

    def __init__(self, loop_device: str):
        self.loop_device = loop_device
        super().__init__(f"No mappers found for {loop_device}")


class PartitionCountMismatchError(DeviceError):
    """Declared and materialized partition counts differ."""

    def __init__(self, declared: int, actual: int):
        self.declared = declared
        self.actual = actual
        super().__init__(
            f"Amount of partitions defined = {declared}, actual amount is {actual}"
        )


class MountError(ImageError):
    """Base exception for mount-related errors."""


class EmptyMapperError(MountError):
    """Customization was attempted before any partition was mounted."""

    def __init__(self) -> None:
        super().__init__("Amount of mappers is 0. Seems parse() hasn't been called yet")


class BootloaderError(ImageError):
    """Base exception for bootloader installation errors."""


class BootloaderNotFoundError(BootloaderError):
    """A bootloader binary required by the chosen strategy is missing."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(_with_output(message, output))


class BootloaderInstallError(BootloaderError):
    """The bootloader installer failed."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(_with_output(message, output))


class ToolNotFoundError(ImageError):
    """An external tool required by the configuration is not installed."""

    def __init__(self, tool: str, where: str = "local host"):
        self.tool = tool
        self.where = where
        super().__init__(f"Please install {tool} on {where}")


class ConversionError(ImageError):
    """Converting the raw image to the target format failed."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(_with_output(message, output))


class RemoteBridgeError(ImageError):
    """The remote-mount bridge could not attach, detach or upload."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(_with_output(message, output))


class InvalidStateError(ImageError):
    """A lifecycle step was called from a state that does not allow it."""

    def __init__(self, operation: str, state: object):
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} while image is {state}")
