"""Tests for fdisk script synthesis."""

import pytest

from appliance_disk.storage.exceptions import PartitionPlanError
from appliance_disk.storage.partition_table import (
    CreatePartition,
    PartitionKind,
    SetBootable,
    SetType,
    fdisk_command,
    fdisk_script,
    synthesize,
    validate_plan,
)


def _plan(count, last="*"):
    parts = [{"sequence": seq, "size_mb": 100, "mount_point": f"/p{seq}"} for seq in range(1, count)]
    parts.append({"sequence": count, "size": last, "mount_point": f"/p{count}"})
    parts[0]["mount_point"] = "/"
    return parts


class TestPlacement:
    """Primary/extended/logical assignment."""

    @pytest.mark.parametrize("count", [1, 2, 3, 4])
    def test_small_plans_are_all_primary(self, disk_factory, count):
        """Test every partition of a plan with up to four entries is primary."""
        table = synthesize(disk_factory(_plan(count)))

        assert [op.kind for op in table.created] == [PartitionKind.PRIMARY] * count
        assert [op.number for op in table.created] == list(range(1, count + 1))

    @pytest.mark.parametrize("count", [5, 6, 8])
    def test_large_plans_use_extended_and_logical(self, disk_factory, count):
        """Test 1-3 primary, 4 extended, 5..N logical numbered from 5."""
        table = synthesize(disk_factory(_plan(count), size_mb=20480))

        kinds = [op.kind for op in table.created]
        assert kinds[:3] == [PartitionKind.PRIMARY] * 3
        assert kinds[3] is PartitionKind.EXTENDED
        assert kinds[4:] == [PartitionKind.LOGICAL] * (count - 4)
        assert [op.number for op in table.created] == list(range(1, count + 1))

    def test_extended_partition_gets_extended_type_code(self, disk_factory):
        """Test the container partition is typed 0x05 unless configured."""
        table = synthesize(disk_factory(_plan(5), size_mb=20480))

        type_ops = [op for op in table.operations if isinstance(op, SetType)]
        assert type_ops[3] == SetType(4, 0x05)
        assert type_ops[4] == SetType(5, 0x83)

    def test_fourth_primary_renders_without_number(self):
        """Test slot four is picked by fdisk without a number prompt."""
        assert CreatePartition(PartitionKind.PRIMARY, 4, 100).render() == "n\np\n\n+100M\n"
        assert CreatePartition(PartitionKind.PRIMARY, 2, 100).render() == "n\np\n2\n\n+100M\n"

    def test_logical_and_extended_rendering(self):
        """Test extended and logical partitions render fdisk's short dialogs."""
        assert CreatePartition(PartitionKind.EXTENDED, 4, 1000).render() == "n\ne\n\n+1000M\n"
        assert CreatePartition(PartitionKind.LOGICAL, 5, None).render() == "n\n\n\n"


class TestScript:
    """Full script rendering."""

    def test_root_and_swap_scenario(self, root_and_swap_disk):
        """Test 3045M bootable root followed by swap on the remainder."""
        script = fdisk_script(root_and_swap_disk)

        assert script == (
            "o\n"
            "n\np\n1\n\n+3045M\n"
            "t\n83\n"
            "n\np\n2\n\n\n"
            "t\n2\n82\n"
            "a\n1\n"
            "w\n"
        )

    def test_first_partition_type_has_no_number(self, disk_factory):
        """Test the type of the only existing partition is set without a number."""
        table = synthesize(disk_factory(_plan(1)))

        assert SetType(None, 0x83) in table.operations

    def test_bootable_flag_only_when_requested(self, disk_factory):
        """Test the active flag is emitted only for bootable disks."""
        plain = synthesize(disk_factory(_plan(2)))
        bootable = synthesize(disk_factory(_plan(2), bootable=True, active_partition=2))

        assert not any(isinstance(op, SetBootable) for op in plain.operations)
        assert SetBootable(2) in bootable.operations

    def test_percentages_truncate_before_scaling(self, disk_factory):
        """Test 50% of 5050MB resolves to 5050 // 100 * 50 = 2500MB."""
        disk = disk_factory(
            [
                {"sequence": 1, "size": "50%", "mount_point": "/"},
                {"sequence": 2, "size": "*", "mount_point": "/data"},
            ],
            size_mb=5050,
        )

        assert synthesize(disk).created[0].size_mb == 2500

    def test_legacy_percent_encoding(self, disk_factory):
        """Test size_mb -1 with size_percent resolves like a percentage."""
        disk = disk_factory(
            [
                {"sequence": 1, "size_mb": -1, "size_percent": 30, "mount_point": "/"},
                {"sequence": 2, "size_mb": -1, "size_percent": -2, "mount_point": "/data"},
            ],
            size_mb=1000,
        )

        created = synthesize(disk).created
        assert created[0].size_mb == 300
        assert created[1].size_mb is None

    def test_literal_script_wins(self, disk_factory):
        """Test a literal script with escaped newlines is used as-is."""
        disk = disk_factory(_plan(1), fdisk_script="o\\nn\\np\\n1\\n\\n\\nw\\n")

        assert fdisk_script(disk) == "o\nn\np\n1\n\n\nw\n"

    def test_fdisk_command_feeds_script_and_tolerates_failure(self, root_and_swap_disk):
        """Test the fdisk command pipes the script into the loop device."""
        cmd = fdisk_command(root_and_swap_disk, "/dev/loop0")

        assert cmd.tool == "fdisk"
        assert cmd.args == ("/dev/loop0",)
        assert cmd.input_text == fdisk_script(root_and_swap_disk)
        assert cmd.tolerate_failure is True


class TestValidatePlan:
    """Plans that must be rejected before anything destructive runs."""

    def test_empty_plan(self, disk_factory):
        with pytest.raises(PartitionPlanError, match="empty"):
            validate_plan(disk_factory([]))

    def test_gap_in_sequences(self, disk_factory):
        disk = disk_factory(
            [
                {"sequence": 1, "size_mb": 100, "mount_point": "/"},
                {"sequence": 3, "size_mb": 100, "mount_point": "/var"},
            ]
        )
        with pytest.raises(PartitionPlanError, match="1..2"):
            validate_plan(disk)

    def test_two_remaining_markers(self, disk_factory):
        disk = disk_factory(
            [
                {"sequence": 1, "size": "*", "mount_point": "/"},
                {"sequence": 2, "size": "*", "mount_point": "/var"},
            ]
        )
        with pytest.raises(PartitionPlanError, match="Only one partition"):
            validate_plan(disk)

    def test_remaining_marker_not_last(self, disk_factory):
        """Test the remaining-space marker on a non-final partition is rejected."""
        disk = disk_factory(
            [
                {"sequence": 1, "size": "*", "mount_point": "/"},
                {"sequence": 2, "size_mb": 100, "mount_point": "/var"},
            ]
        )
        with pytest.raises(PartitionPlanError, match="not the last"):
            synthesize(disk)

    def test_active_partition_outside_plan(self, disk_factory):
        disk = disk_factory(_plan(2), bootable=True, active_partition=3)
        with pytest.raises(PartitionPlanError, match="Active partition 3"):
            validate_plan(disk)

    def test_percentage_resolving_to_zero(self, disk_factory):
        """Test 1% of a disk under 100MB is rejected."""
        disk = disk_factory(
            [
                {"sequence": 1, "size": "1%", "mount_point": "/"},
                {"sequence": 2, "size": "*", "mount_point": "/var"},
            ],
            size_mb=99,
        )
        with pytest.raises(PartitionPlanError, match="resolves to 0MB"):
            validate_plan(disk)
