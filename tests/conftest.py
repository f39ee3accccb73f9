"""
Pytest configuration and shared fixtures for appliance-disk tests.

No test touches a real device: every engine component takes a ``run``
transport, and tests hand it a FakeRunner that records the rendered command
lines, answers them by regex and keeps a small in-memory mount table so
mount/umount/mountpoint behave consistently.
"""

import re
import shlex
from typing import Callable, List, Optional, Union

import pytest

from appliance_disk.config import settings
from appliance_disk.domain.models import Disk
from appliance_disk.storage.exceptions import CommandExecutionError


# ==============================================================================
# Fake Transport
# ==============================================================================


class FakeRunner:
    """Callable standing in for ``run(command: str) -> str``."""

    def __init__(self) -> None:
        self.commands: List[str] = []
        self.mounted: set = set()
        self._rules: list = []

    def on(
        self,
        pattern: str,
        output: Union[str, Callable[[str], str]] = "",
        *,
        fail: bool = False,
    ) -> "FakeRunner":
        """Answer commands matching ``pattern``. Later rules win."""
        self._rules.insert(0, (re.compile(pattern), output, fail))
        return self

    def __call__(self, command_line: str) -> str:
        self.commands.append(command_line)
        for pattern, output, fail in self._rules:
            if pattern.search(command_line):
                text = output(command_line) if callable(output) else output
                if fail:
                    raise CommandExecutionError(command_line, text, 1)
                return text
        return self._mount_table(command_line)

    def _mount_table(self, command_line: str) -> str:
        argv = shlex.split(command_line)
        if not argv:
            return ""
        if argv[0] == "mountpoint":
            if argv[-1] not in self.mounted:
                raise CommandExecutionError(command_line, "", 1)
        elif argv[0] == "mount" and len(argv) >= 3:
            self.mounted.add(argv[-1])
        elif argv[0] == "umount":
            for path in argv[1:]:
                if not path.startswith("-"):
                    self.mounted.discard(path)
        return ""

    def matching(self, pattern: str) -> List[str]:
        regex = re.compile(pattern)
        return [line for line in self.commands if regex.search(line)]

    def index(self, pattern: str) -> int:
        """Position of the first command matching ``pattern``."""
        regex = re.compile(pattern)
        for position, line in enumerate(self.commands):
            if regex.search(line):
                return position
        raise AssertionError(f"no command matched {pattern!r}:\n" + "\n".join(self.commands))

    def mappers(self, count: int, loop_number: str = "0") -> "FakeRunner":
        """Make ``find`` report ``count`` mapper nodes for the loop device."""
        nodes = "\n".join(
            f"/dev/mapper/loop{loop_number}p{index}" for index in range(1, count + 1)
        )
        return self.on(r"^find ", nodes + "\n" if nodes else "")


@pytest.fixture
def runner() -> FakeRunner:
    """
    Fixture providing a FakeRunner with sensible defaults.

    - the first free loop device is /dev/loop0
    - image files do not exist yet (``ls`` fails)
    - qemu-img is installed
    - mktemp hands out /tmp/tmp.dummy
    """
    fake = FakeRunner()
    fake.on(r"^losetup -f$", "/dev/loop0\n")
    fake.on(r"^ls ", "No such file or directory", fail=True)
    fake.on(r"^which qemu-img", "/usr/bin/qemu-img\n")
    fake.on(r"^mktemp ", "/tmp/tmp.dummy\n")
    return fake


@pytest.fixture
def local_runner() -> FakeRunner:
    """Fixture providing a second FakeRunner for the local side of a remote build."""
    return FakeRunner()


def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def sleep() -> Callable[[float], None]:
    return no_sleep


# ==============================================================================
# Settings
# ==============================================================================


@pytest.fixture(autouse=True)
def default_settings(tmp_path, monkeypatch):
    """
    Auto-use fixture that isolates tests from the user's settings file.
    """
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture
def temp_settings_file(tmp_path):
    settings_dir = tmp_path / ".config" / "appliance-disk"
    settings_dir.mkdir(parents=True, exist_ok=True)
    return settings_dir / "settings.json"


# ==============================================================================
# Topology Fixtures
# ==============================================================================


def make_disk(partitions: list, size_mb: int = 5120, path: Optional[str] = None, **kwargs) -> Disk:
    data = {"size_mb": size_mb, "partitions": partitions}
    data.update(kwargs)
    return Disk.from_dict(data, path=path or "/srv/images/appliance.raw")


@pytest.fixture
def disk_factory() -> Callable[..., Disk]:
    """Fixture building a Disk from partition dicts, 5GB by default."""
    return make_disk


@pytest.fixture
def root_and_swap_disk() -> Disk:
    """
    Fixture providing the classic two-partition appliance layout.

    5GB disk, 3045MB ext4 root flagged bootable, swap on the remainder.
    """
    return make_disk(
        [
            {"sequence": 1, "size_mb": 3045, "label": "SLASH", "mount_point": "/"},
            {
                "sequence": 2,
                "size": "*",
                "label": "SWAP",
                "mount_point": "SWAP",
                "filesystem": "swap",
                "type_code": "82",
            },
        ],
        bootable=True,
    )


@pytest.fixture
def three_partition_disk() -> Disk:
    """Root, /var and swap."""
    return make_disk(
        [
            {"sequence": 1, "size_mb": 2048, "label": "SLASH", "mount_point": "/"},
            {"sequence": 2, "size_mb": 1024, "label": "VAR", "mount_point": "/var"},
            {"sequence": 3, "size": "*", "mount_point": "SWAP", "filesystem": "swap"},
        ]
    )
