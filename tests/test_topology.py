"""Tests for topology files and multi-disk naming."""

import json

import pytest

from appliance_disk.config.topology import (
    disk_image_path,
    load_disk,
    load_platforms,
    parse_json,
    parse_xml,
    select_topology,
)
from appliance_disk.domain.models import BootLoader, StorageType
from appliance_disk.storage.exceptions import ConfigurationError, TopologyNotFoundError


LEGACY_XML = """<?xml version="1.0" encoding="UTF-8"?>
<Platforms>
  <Topology>
    <Name>Test</Name>
    <Type>1</Type>
    <HddSizeGb>5</HddSizeGb>
    <Bootable>true</Bootable>
    <FdiskCmd>n\\np\\n1\\n\\n+3045M\\nn\\np\\n2\\n\\n\\nt\\n2\\n82\\na\\n1\\nw\\n</FdiskCmd>
    <Description>Topology for release xxxx</Description>
    <Partition>
      <Sequence>1</Sequence>
      <SizeMb>3045</SizeMb>
      <Label>SLASH</Label>
      <MountPoint>/</MountPoint>
      <FileSystem>ext4</FileSystem>
      <FileSystemArgs></FileSystemArgs>
    </Partition>
    <Partition>
      <Sequence>2</Sequence>
      <SizeMb>400</SizeMb>
      <Label>SWAP</Label>
      <MountPoint>SWAP</MountPoint>
      <FileSystem>swap</FileSystem>
      <FileSystemArgs></FileSystemArgs>
    </Partition>
  </Topology>
</Platforms>
"""

TOPOLOGIES = {
    "topologies": [
        {"name": "small", "size_mb": 2048, "partitions": [
            {"sequence": 1, "size": "*", "mount_point": "/"}
        ]},
        {"name": "large", "size_mb": 20480, "bootloader": "grub2", "storage_type": "qcow2",
         "partitions": [
            {"sequence": 1, "size_mb": 10240, "mount_point": "/"},
            {"sequence": 2, "size": "*", "mount_point": "SWAP", "filesystem": "swap"},
        ]},
    ]
}


@pytest.fixture
def json_config(tmp_path):
    path = tmp_path / "topologies.json"
    path.write_text(json.dumps(TOPOLOGIES))
    return path


class TestParsing:
    def test_json_wrapper(self):
        assert [t["name"] for t in parse_json(json.dumps(TOPOLOGIES))] == ["small", "large"]

    def test_json_single_object(self):
        assert parse_json('{"size_mb": 100}') == [{"size_mb": 100}]

    def test_json_invalid(self):
        with pytest.raises(ConfigurationError, match="Invalid topology JSON"):
            parse_json("{nope")
        with pytest.raises(ConfigurationError):
            parse_json("[1, 2]")

    def test_legacy_xml(self):
        (topology,) = parse_xml(LEGACY_XML)

        assert topology["name"] == "Test"
        assert topology["hdd_size_gb"] == "5"
        assert "storage_type" not in topology
        assert [p["mount_point"] for p in topology["partitions"]] == ["/", "SWAP"]
        assert "filesystem_args" not in topology["partitions"][0]

    def test_xml_invalid(self):
        with pytest.raises(ConfigurationError, match="Invalid topology XML"):
            parse_xml("<Platforms><Topology>")

    def test_load_platforms_picks_format_by_extension(self, tmp_path, json_config):
        xml_path = tmp_path / "topologies.xml"
        xml_path.write_text(LEGACY_XML)

        assert len(load_platforms(json_config)) == 2
        assert len(load_platforms(xml_path)) == 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_platforms(tmp_path / "missing.json")


class TestSelectTopology:
    def test_by_name_and_index(self):
        platforms = TOPOLOGIES["topologies"]

        assert select_topology(platforms, "large")["name"] == "large"
        assert select_topology(platforms, "0")["name"] == "small"
        assert select_topology(platforms)["name"] == "small"

    def test_not_found(self):
        with pytest.raises(TopologyNotFoundError, match="'medium'"):
            select_topology(TOPOLOGIES["topologies"], "medium")
        with pytest.raises(TopologyNotFoundError):
            select_topology(TOPOLOGIES["topologies"], "5")
        with pytest.raises(TopologyNotFoundError):
            select_topology([])


class TestDiskImagePath:
    def test_main_disk_and_secondary_disks(self):
        assert disk_image_path("/srv/app", 0, StorageType.QCOW2) == "/srv/app.qcow2"
        assert disk_image_path("/srv/app", 2, StorageType.VMDK) == "/srv/app_2.vmdk"


class TestLoadDisk:
    def test_resolves_disk(self, json_config):
        disk = load_disk(json_config, "large", image_path="/srv/images/appliance")

        assert disk.path == "/srv/images/appliance.qcow2"
        assert disk.bootloader is BootLoader.GRUB2
        assert disk.size_mb == 20480
        assert len(disk.partitions) == 2

    def test_format_extension_on_image_path_is_dropped(self, json_config):
        disk = load_disk(json_config, "large", image_path="/srv/appliance.qcow2", index=1)

        assert disk.path == "/srv/appliance_1.qcow2"

    def test_legacy_xml_disk(self, tmp_path):
        path = tmp_path / "legacy.xml"
        path.write_text(LEGACY_XML)

        disk = load_disk(path, "Test", image_path="/srv/appliance")

        assert disk.size_mb == 5120
        assert disk.bootable is True
        assert disk.storage_type is StorageType.RAW
        assert disk.path == "/srv/appliance.raw"
        assert disk.fdisk_script.startswith("n\\np\\n1")
        assert disk.partitions[1].is_swap
