"""
Pytest configuration and shared fixtures for ddarch tests.

External tools are never run: ``subprocess.run`` is replaced by FakeTools,
which answers each tool with captured output and records every call.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Union

import pytest

from ddarch.app.context import OperationContext
from ddarch.config import settings
from ddarch.domain import (
    ImageTarget,
    Partition,
    PartitionTable,
    TableKind,
    TargetKind,
)


# ==============================================================================
# Captured Tool Output
# ==============================================================================


def make_fdisk_output(path: str, label: str = "dos") -> str:
    """``fdisk -l -o Device,Start,End,Sectors,Type`` of a 100 MiB image."""
    if label == "gpt":
        types = ("EFI System", "Linux filesystem")
        identifier = "5F0C0A39-2C0B-4F57-9C33-3A2E54B1D7A1"
    else:
        types = ("W95 FAT32 (LBA)", "Linux")
        identifier = "0x8f1a2b3c"
    return (
        f"Disk {path}: 100 MiB, 104857600 bytes, 204800 sectors\n"
        "Units: sectors of 1 * 512 = 512 bytes\n"
        "Sector size (logical/physical): 512 bytes / 512 bytes\n"
        "I/O size (minimum/optimal): 512 bytes / 512 bytes\n"
        f"Disklabel type: {label}\n"
        f"Disk identifier: {identifier}\n"
        "\n"
        "Device     Start    End Sectors Type\n"
        f"{path}1   2048  22527   20480 {types[0]}\n"
        f"{path}2  22528 104447   81920 {types[1]}\n"
    )


def make_parted_output(path: str, table: str = "msdos", fs2: str = "ext4") -> str:
    """``parted --script <path> print`` of the same image."""
    return (
        "Model:  (file)\n"
        f"Disk {path}: 105MB\n"
        "Sector size (logical/physical): 512B/512B\n"
        f"Partition Table: {table}\n"
        "Disk Flags:\n"
        "\n"
        "Number  Start   End     Size    Type     File system  Flags\n"
        " 1      1049kB  11.5MB  10.5MB  primary  fat32        lba\n"
        f" 2      11.5MB  53.5MB  41.9MB  primary  {fs2}\n"
        "\n"
    )


SGDISK_OUTPUT = (
    "Disk /tmp/gpt.img: 204800 sectors, 100.0 MiB\n"
    "Sector size (logical): 512 bytes\n"
    "Disk identifier (GUID): 5F0C0A39-2C0B-4F57-9C33-3A2E54B1D7A1\n"
    "Partition table holds up to 128 entries\n"
    "Main partition table begins at sector 2 and ends at sector 33\n"
    "First usable sector is 34, last usable sector is 204766\n"
    "Partitions will be aligned on 2048-sector boundaries\n"
    "Total free space is 102365 sectors (50.0 MiB)\n"
)

RESIZE2FS_MIN_OUTPUT = (
    "resize2fs 1.47.0 (5-Feb-2023)\n"
    "Estimated minimum size of the filesystem: 6000\n"
)

DUMPE2FS_OUTPUT = (
    "dumpe2fs 1.47.0 (5-Feb-2023)\n"
    "Filesystem volume name:   rootfs\n"
    "Filesystem magic number:  0xEF53\n"
    "Filesystem features:      has_journal ext_attr resize_inode dir_index filetype extent\n"
    "Inode count:              10240\n"
    "Block count:              10240\n"
    "Reserved block count:     512\n"
    "Free blocks:              4123\n"
    "First block:              0\n"
    "Block size:               4096\n"
    "Fragment size:            4096\n"
)

# Partition 2 of the images above
PART2_START_BYTE = 22528 * 512
PART2_SIZE_BYTES = 81920 * 512
# 6000 blocks of 4096 bytes plus a 1 MiB tail
SHRUNK_END_BYTE = PART2_START_BYTE + 6000 * 4096 + 1024 * 1024


# ==============================================================================
# Subprocess Fake
# ==============================================================================


Response = Union[subprocess.CompletedProcess, Callable[[List[str]], Any]]


class FakeTools:
    """Stand-in for ``subprocess.run`` keyed by tool basename.

    ``set(name, ...)`` fixes the answer of a tool; ``queue(name, ...)``
    answers the next calls in order before falling back to ``set``.
    """

    def __init__(self):
        self.responses: Dict[str, Any] = {}
        self.queues: Dict[str, List[Any]] = {}
        self.calls: List[List[str]] = []
        self.inputs: List[Any] = []

    def set(self, name: str, stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        self.responses[name] = (stdout, returncode, stderr)

    def handler(self, name: str, func: Callable[[List[str]], tuple]) -> None:
        """``func(command)`` returns (stdout, returncode, stderr)."""
        self.responses[name] = func

    def queue(self, name: str, stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        self.queues.setdefault(name, []).append((stdout, returncode, stderr))

    def commands(self, name: str) -> List[List[str]]:
        return [call for call in self.calls if os.path.basename(call[0]) == name]

    def __call__(self, command, **kwargs):
        command = list(command)
        self.calls.append(command)
        self.inputs.append(kwargs.get("input"))
        name = os.path.basename(command[0])
        if self.queues.get(name):
            stdout, returncode, stderr = self.queues[name].pop(0)
        else:
            response = self.responses.get(name, ("", 0, ""))
            if callable(response):
                response = response(command)
            stdout, returncode, stderr = response
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def fake_tools(mocker) -> FakeTools:
    """
    Fixture replacing subprocess.run for every external tool.

    Returns:
        FakeTools recording calls; answers success with empty output by default.
    """
    tools = FakeTools()
    mocker.patch("ddarch.storage.command_runners.subprocess.run", side_effect=tools)
    return tools


@pytest.fixture(autouse=True)
def fake_which(mocker):
    """Every tool is found under /usr/bin unless a test says otherwise."""
    return mocker.patch(
        "ddarch.storage.command_runners.shutil.which",
        side_effect=lambda name: f"/usr/bin/{name}",
    )


# ==============================================================================
# Settings
# ==============================================================================


@pytest.fixture(autouse=True)
def default_settings(tmp_path, monkeypatch):
    """
    Auto-use fixture resetting settings to their defaults.

    The settings file is looked up in a temporary directory.
    """
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield settings.settings_store
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


# ==============================================================================
# Domain Fixtures
# ==============================================================================


@pytest.fixture
def ctx(tmp_path) -> OperationContext:
    """Operation context answering yes, with private work and mount dirs."""
    work = tmp_path / "work"
    mnt = tmp_path / "mnt"
    work.mkdir()
    mnt.mkdir()
    return OperationContext(assume_yes=True, work_dir=work, mnt_dir=mnt)


@pytest.fixture
def image_path(tmp_path) -> Path:
    """A sparse 100 MiB image file."""
    path = tmp_path / "test.img"
    with open(path, "wb") as image:
        image.truncate(104857600)
    return path


@pytest.fixture
def file_target(image_path) -> ImageTarget:
    return ImageTarget(
        path=str(image_path), kind=TargetKind.FILE, sector_size=512, size_bytes=104857600
    )


@pytest.fixture
def device_target() -> ImageTarget:
    return ImageTarget(
        path="/dev/sdz", kind=TargetKind.DEVICE, sector_size=512, size_bytes=104857600
    )


def make_table(kind: TableKind = TableKind.MBR, fs2: str = "ext4") -> PartitionTable:
    gpt = kind == TableKind.GPT
    return PartitionTable(
        kind=kind,
        sector_size=512,
        partitions=(
            Partition(1, 2048, 20480, 512, "EFI System" if gpt else "W95 FAT32 (LBA)", "fat32"),
            Partition(2, 22528, 81920, 512, "Linux filesystem" if gpt else "Linux", fs2),
        ),
        first_usable_lba=34 if gpt else 0,
    )


@pytest.fixture
def mbr_table() -> PartitionTable:
    return make_table()


@pytest.fixture
def gpt_table() -> PartitionTable:
    return make_table(TableKind.GPT)


@pytest.fixture
def e2fs_tools(fake_tools) -> FakeTools:
    """FakeTools answering losetup and e2fsprogs for a shrinkable ext4."""
    fake_tools.set("losetup", "/dev/loop7\n")
    fake_tools.handler(
        "resize2fs",
        lambda command: (RESIZE2FS_MIN_OUTPUT if "-P" in command else "", 0, ""),
    )
    fake_tools.set("dumpe2fs", DUMPE2FS_OUTPUT)
    fake_tools.set("e2fsck", "rootfs: clean\n")
    return fake_tools
