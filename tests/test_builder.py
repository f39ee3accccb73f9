"""Tests for the image builder service."""

from unittest.mock import Mock, patch

import pytest

from appliance_disk.config import settings
from appliance_disk.services.builder import (
    Artifact,
    ArtifactType,
    CommandFiller,
    ImageBuilder,
)
from appliance_disk.storage.exceptions import CommandExecutionError
from appliance_disk.storage.remote import RemoteConfig


@pytest.fixture(autouse=True)
def no_grace_period():
    settings.settings_store.values["mapper_grace_seconds"] = 0


class TestCommandFiller:
    def test_appends_rootfs_path(self):
        run = Mock(return_value="")
        filler = CommandFiller("debootstrap bookworm", "install-app --quiet", run=run)

        filler.make_rootfs("/mnt/my root")
        filler.install_app("/mnt/my root")

        assert [c.args[0] for c in run.call_args_list] == [
            "debootstrap bookworm '/mnt/my root'",
            "install-app --quiet '/mnt/my root'",
        ]

    def test_install_app_is_optional(self):
        run = Mock()
        CommandFiller("debootstrap bookworm", run=run).install_app("/mnt/root")
        run.assert_not_called()


class TestImageBuilder:
    def test_full_build(self, runner, root_and_swap_disk):
        runner.mappers(2)
        filler = Mock()

        artifact = ImageBuilder(root_and_swap_disk, "/mnt/root", filler=filler, run=runner).run()

        assert artifact == Artifact(
            name="appliance.raw", path="/srv/images/appliance.raw", type=ArtifactType.IMAGE
        )
        filler.make_rootfs.assert_called_once_with("/mnt/root")
        assert runner.index(r"^mount /dev/mapper/loop0p1") < runner.index(r"^umount -l /mnt/root$")
        assert runner.index(r"^losetup -d /dev/loop0$") < runner.index(r"^rm -rf /mnt/root$")

    def test_compress(self, runner, root_and_swap_disk):
        runner.mappers(2)

        artifact = ImageBuilder(root_and_swap_disk, "/mnt/root", run=runner, compress=True).run()

        assert artifact.name == "appliance.raw"
        assert artifact.path == "/srv/images/appliance.raw.tgz"
        assert runner.commands[-2:] == [
            "tar cfzp /srv/images/appliance.raw.tgz -C /srv/images appliance.raw",
            "rm -f /srv/images/appliance.raw",
        ]
        # compression only starts after the loop device is gone
        assert runner.index(r"^losetup -d") < runner.index(r"^tar ")

    def test_failure_still_releases(self, runner, root_and_swap_disk):
        runner.mappers(2)
        filler = Mock()
        filler.make_rootfs.side_effect = CommandExecutionError("debootstrap", "E: 404", 1)

        with pytest.raises(CommandExecutionError):
            ImageBuilder(root_and_swap_disk, "/mnt/root", filler=filler, run=runner).run()

        assert runner.matching(r"^umount -l /mnt/root$")
        assert runner.matching(r"^losetup -d /dev/loop0$")
        assert runner.matching(r"^tar ") == []

    def test_remote_build_uses_ssh_transport(self, root_and_swap_disk):
        config = RemoteConfig("builder")
        with patch("appliance_disk.services.builder.ssh_runner") as ssh_runner, patch(
            "appliance_disk.services.builder.DiskImage"
        ) as disk_image:
            disk_image.return_value.convert.return_value = "/srv/images/appliance.raw"
            artifact = ImageBuilder(root_and_swap_disk, "/mnt/local", remote=config).run()

        transport = ssh_runner.return_value
        args = disk_image.call_args.args
        assert args[2] is transport
        assert args[3].config == config
        assert artifact.path == "/srv/images/appliance.raw"
