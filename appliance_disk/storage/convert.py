"""Raw image conversion with qemu-img."""

from __future__ import annotations

from appliance_disk.domain.models import StorageType
from appliance_disk.logging import LoggerFactory
from appliance_disk.storage.commands import RunFunc, command, execute
from appliance_disk.storage.exceptions import CommandExecutionError, ConversionError


log = LoggerFactory.for_image()

RAW_SUFFIX = ".raw"


def converted_path(raw_path: str, storage_type: StorageType) -> str:
    """/srv/appliance.raw -> /srv/appliance.qcow2"""
    base = raw_path[: -len(RAW_SUFFIX)] if raw_path.endswith(RAW_SUFFIX) else raw_path
    return f"{base}.{storage_type.value}"


def convert_image(run: RunFunc, raw_path: str, storage_type: StorageType) -> str:
    """Convert ``raw_path`` to ``storage_type`` and delete the raw file.

    Returns the path of the converted image (``raw_path`` itself for RAW).

    Raises:
        ConversionError: If qemu-img fails or the raw file cannot be removed
    """
    if storage_type is StorageType.RAW:
        return raw_path

    new_path = converted_path(raw_path, storage_type)
    log.info(f"Converting {raw_path} to {storage_type.value}")
    try:
        execute(run, command("sync"))
        execute(
            run,
            command(
                "qemu-img", "convert", "-f", "raw", "-O", storage_type.value, raw_path, new_path
            ),
        )
        execute(run, command("rm", "-f", raw_path))
    except CommandExecutionError as error:
        raise ConversionError(
            f"Converting {raw_path} to {storage_type.value}", str(error)
        ) from error
    log.info(f"Converted image written to {new_path}")
    return new_path
