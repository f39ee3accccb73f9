"""Tests for qemu-img conversion."""

import pytest

from appliance_disk.domain.models import StorageType
from appliance_disk.storage.convert import convert_image, converted_path
from appliance_disk.storage.exceptions import ConversionError


class TestConvertedPath:
    def test_replaces_raw_suffix(self):
        assert converted_path("/srv/app.raw", StorageType.QCOW2) == "/srv/app.qcow2"

    def test_appends_when_no_raw_suffix(self):
        assert converted_path("/srv/app", StorageType.VMDK) == "/srv/app.vmdk"


class TestConvertImage:
    def test_raw_is_left_alone(self, runner):
        assert convert_image(runner, "/srv/app.raw", StorageType.RAW) == "/srv/app.raw"
        assert runner.commands == []

    def test_converts_then_removes_raw(self, runner):
        path = convert_image(runner, "/srv/app.raw", StorageType.QCOW2)

        assert path == "/srv/app.qcow2"
        assert runner.commands == [
            "sync",
            "qemu-img convert -f raw -O qcow2 /srv/app.raw /srv/app.qcow2",
            "rm -f /srv/app.raw",
        ]

    def test_failure_keeps_raw_file(self, runner):
        runner.on(r"^qemu-img ", "qemu-img: Could not open '/srv/app.raw'", fail=True)

        with pytest.raises(ConversionError, match="Could not open"):
            convert_image(runner, "/srv/app.raw", StorageType.VDI)

        assert runner.matching(r"^rm ") == []
