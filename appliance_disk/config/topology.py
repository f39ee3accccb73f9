"""Disk topology files.

Two formats are accepted, picked by file extension:

JSON (``.json``)::

    {"topologies": [
        {"name": "small", "size_mb": 5120, "bootloader": "grub2",
         "storage_type": "qcow2",
         "partitions": [
            {"sequence": 1, "size_mb": 3045, "label": "SLASH", "mount_point": "/"},
            {"sequence": 2, "size": "*", "mount_point": "SWAP", "filesystem": "swap"}
         ]}
    ]}

A single topology object without the ``topologies`` wrapper works too.

XML (``.xml``)::

    <Platforms>
      <Topology>
        <Name>small</Name>
        <HddSizeGb>5</HddSizeGb>
        <Bootable>true</Bootable>
        <Partition>
          <Sequence>1</Sequence>
          <SizeMb>3045</SizeMb>
          <MountPoint>/</MountPoint>
          ...
        </Partition>
      </Topology>
    </Platforms>
"""

from __future__ import annotations

import json
import os
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Optional, Union

from appliance_disk.domain.models import Disk, StorageType
from appliance_disk.logging import LoggerFactory
from appliance_disk.storage.exceptions import ConfigurationError, TopologyNotFoundError


log = LoggerFactory.for_system()

_TOPOLOGY_FIELDS = {
    "Name": "name",
    "Type": "storage_type",
    "StorageType": "storage_type",
    "HddSizeGb": "hdd_size_gb",
    "SizeMb": "size_mb",
    "Bootable": "bootable",
    "ActivePartition": "active_partition",
    "BootLoader": "bootloader",
    "Bootloader": "bootloader",
    "FdiskCmd": "fdisk_script",
    "Description": "description",
}

_PARTITION_FIELDS = {
    "Sequence": "sequence",
    "SizeMb": "size_mb",
    "SizePercent": "size_percent",
    "Label": "label",
    "MountPoint": "mount_point",
    "FileSystem": "filesystem",
    "FileSystemArgs": "filesystem_args",
    "Type": "type_code",
    "Description": "description",
    "description": "description",
}


def load_platforms(path: Union[str, Path]) -> list[dict[str, Any]]:
    """Read every topology defined in ``path``.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as error:
        raise ConfigurationError(f"Cannot read topology file {path}: {error}") from error

    if path.suffix.lower() == ".xml":
        platforms = parse_xml(text)
    else:
        platforms = parse_json(text)
    log.debug(f"Loaded {len(platforms)} topologies from {path}")
    return platforms


def parse_json(text: str) -> list[dict[str, Any]]:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as error:
        raise ConfigurationError(f"Invalid topology JSON: {error}") from error
    if isinstance(document, dict) and "topologies" in document:
        document = document["topologies"]
    elif isinstance(document, dict):
        document = [document]
    if not isinstance(document, list) or not all(isinstance(item, dict) for item in document):
        raise ConfigurationError("Topology JSON must be an object or a list of objects")
    return document


def parse_xml(text: str) -> list[dict[str, Any]]:
    try:
        root = ET.fromstring(text)
    except ET.ParseError as error:
        raise ConfigurationError(f"Invalid topology XML: {error}") from error

    topologies = [root] if root.tag == "Topology" else root.findall("Topology")
    platforms = []
    for element in topologies:
        topology = _fields(element, _TOPOLOGY_FIELDS)
        # numeric Type values are legacy topology ids, not image formats
        if str(topology.get("storage_type", "")).isdigit():
            del topology["storage_type"]
        topology["partitions"] = [
            _fields(part, _PARTITION_FIELDS) for part in element.findall("Partition")
        ]
        platforms.append(topology)
    return platforms


def _fields(element: ET.Element, mapping: dict[str, str]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for child in element:
        key = mapping.get(child.tag)
        text = (child.text or "").strip()
        if key and text:
            data[key] = text
    return data


def select_topology(platforms: list[dict[str, Any]], key: Optional[str] = None) -> dict[str, Any]:
    """Pick a topology by name or by position.

    With no key the first topology is returned.

    Raises:
        TopologyNotFoundError: If nothing matches ``key``
    """
    if not platforms:
        raise TopologyNotFoundError(key or "<first>")
    if key is None:
        return platforms[0]
    for topology in platforms:
        if str(topology.get("name", "")) == key:
            return topology
    if key.isdigit() and int(key) < len(platforms):
        return platforms[int(key)]
    raise TopologyNotFoundError(key)


def disk_image_path(main_path: str, index: int, storage_type: StorageType) -> str:
    """Image path for disk ``index`` of a multi-disk appliance.

    /srv/app, 0 -> /srv/app.qcow2; /srv/app, 2 -> /srv/app_2.qcow2
    """
    if index == 0:
        return f"{main_path}.{storage_type.value}"
    return f"{main_path}_{index}.{storage_type.value}"


def load_disk(
    config_path: Union[str, Path],
    key: Optional[str] = None,
    image_path: Optional[str] = None,
    index: int = 0,
) -> Disk:
    """Load one topology and resolve it into a Disk.

    ``image_path`` is the main image path; a format extension on it is
    dropped and the disk's own path is derived with disk_image_path().
    """
    topology = select_topology(load_platforms(config_path), key)
    if not image_path:
        return Disk.from_dict(topology)
    storage_type = StorageType.parse(topology.get("storage_type"))
    base, suffix = os.path.splitext(image_path)
    if suffix.lstrip(".").lower() in {member.value for member in StorageType}:
        image_path = base
    return Disk.from_dict(topology, path=disk_image_path(image_path, index, storage_type))
