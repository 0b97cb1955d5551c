"""Tests for the partition resize engine."""

import pytest

from conftest import (
    PART2_SIZE_BYTES,
    PART2_START_BYTE,
    RESIZE2FS_MIN_OUTPUT,
    SHRUNK_END_BYTE,
    make_table,
)
from ddarch.domain import Partition, PartitionTable, ResizeOutcome, TableKind
from ddarch.storage import resize
from ddarch.storage.exceptions import ExternalToolFailure

MIB = 1024 * 1024


@pytest.fixture
def inspect(mocker, mbr_table):
    return mocker.patch("ddarch.storage.resize.geometry.inspect", return_value=mbr_table)


@pytest.fixture
def logical_inspect(mocker):
    """Last data partition is logical 5, inside extended partition 2."""
    table = PartitionTable(
        kind=TableKind.MBR,
        sector_size=512,
        partitions=(
            Partition(1, 2048, 20480, 512, "W95 FAT32 (LBA)", "fat32"),
            Partition(2, 22528, 81920, 512, "Extended"),
            Partition(5, 24576, 79872, 512, "Linux", "ext4"),
        ),
    )
    return mocker.patch("ddarch.storage.resize.geometry.inspect", return_value=table)


def _resize_calls(tools):
    return [call for call in tools.commands("resize2fs") if "-P" not in call]


class TestShrinkLastPartition:
    """Tests for resize.shrink_last_partition."""

    def test_shrinks_ext4(self, ctx, file_target, inspect, e2fs_tools):
        """Test the full shrink: check, resize2fs, unbind, parted."""
        result = resize.shrink_last_partition(ctx, file_target, tail=MIB)

        assert result.outcome == ResizeOutcome.SHRUNK
        assert result.new_end_byte == SHRUNK_END_BYTE
        assert result.plan.min_blocks == 6000
        assert _resize_calls(e2fs_tools) == [["/usr/bin/resize2fs", "/dev/loop7", "6000"]]
        assert len(e2fs_tools.commands("e2fsck")) == 1

        parted = e2fs_tools.commands("parted")[0]
        assert parted == [
            "/usr/bin/parted", "---pretend-input-tty", file_target.path,
            "unit", "B", "resizepart", "2", f"{SHRUNK_END_BYTE - 1}B",
        ]
        parted_input = e2fs_tools.inputs[e2fs_tools.calls.index(parted)]
        assert parted_input == "Yes\n"

    def test_loop_bound_to_partition(self, ctx, file_target, inspect, e2fs_tools):
        """Test the loop device covers exactly the last partition."""
        resize.shrink_last_partition(ctx, file_target, tail=MIB)

        losetup = e2fs_tools.commands("losetup")
        assert losetup[0] == [
            "/usr/bin/losetup", "--find", "--show",
            "--offset", str(PART2_START_BYTE),
            "--sizelimit", str(PART2_SIZE_BYTES),
            file_target.path,
        ]
        assert ["/usr/bin/losetup", "--detach", "/dev/loop7"] in losetup
        assert ctx.loop_device is None

    def test_unbinds_before_partition_edit(self, ctx, file_target, inspect, e2fs_tools):
        """Test parted runs only after the loop device is released."""
        resize.shrink_last_partition(ctx, file_target, tail=MIB)

        names = [call[0].rsplit("/", 1)[-1] for call in e2fs_tools.calls]
        detach = max(i for i, call in enumerate(e2fs_tools.calls) if "--detach" in call)
        assert detach < names.index("parted")

    def test_non_ext_is_skipped(self, ctx, file_target, mocker, fake_tools):
        """Test a non-ext last partition is never touched."""
        mocker.patch(
            "ddarch.storage.resize.geometry.inspect", return_value=make_table(fs2="btrfs")
        )

        result = resize.shrink_last_partition(ctx, file_target, tail=MIB)

        assert result.outcome == ResizeOutcome.SKIPPED
        assert "btrfs" in result.reason
        assert result.new_end_byte == PART2_START_BYTE + PART2_SIZE_BYTES
        assert fake_tools.calls == []

    def test_nothing_to_gain_is_skipped(self, ctx, file_target, inspect, e2fs_tools):
        """Test a minimum size close to the partition size skips."""
        e2fs_tools.handler(
            "resize2fs",
            lambda command: (
                "Estimated minimum size of the filesystem: 10200\n" if "-P" in command else "",
                0,
                "",
            ),
        )

        result = resize.shrink_last_partition(ctx, file_target, tail=MIB)

        assert result.outcome == ResizeOutcome.SKIPPED
        assert _resize_calls(e2fs_tools) == []
        assert e2fs_tools.commands("parted") == []

    def test_gpt_relocates_backup_first(self, ctx, file_target, mocker, e2fs_tools):
        """Test the backup GPT header is moved before anything else changes."""
        mocker.patch(
            "ddarch.storage.resize.geometry.inspect", return_value=make_table(TableKind.GPT)
        )

        resize.shrink_last_partition(ctx, file_target, tail=MIB)

        first = e2fs_tools.calls[0]
        assert first == ["/usr/bin/sgdisk", "--move-second-header", file_target.path]

    def test_estimate_retried_after_check(self, ctx, file_target, inspect, e2fs_tools):
        """Test resize2fs -P is retried once after a forced check."""
        e2fs_tools.queue("resize2fs", "", returncode=1, stderr="Please run e2fsck -f first")
        e2fs_tools.queue("resize2fs", RESIZE2FS_MIN_OUTPUT)

        result = resize.shrink_last_partition(ctx, file_target, tail=MIB)

        assert result.outcome == ResizeOutcome.SHRUNK
        # the check before the retry satisfies the mandatory check
        assert len(e2fs_tools.commands("e2fsck")) == 1

    def test_declined_check_skips(self, ctx, file_target, inspect, e2fs_tools):
        """Test declining the forced check skips the shrink."""
        ctx.assume_yes = False
        ctx.prompt = lambda question: "n"
        e2fs_tools.queue("resize2fs", "", returncode=1)

        result = resize.shrink_last_partition(ctx, file_target, tail=MIB)

        assert result.outcome == ResizeOutcome.SKIPPED
        assert e2fs_tools.commands("e2fsck") == []

    def test_estimate_unavailable_after_check(self, ctx, file_target, inspect, e2fs_tools):
        e2fs_tools.queue("resize2fs", "", returncode=1)
        e2fs_tools.queue("resize2fs", "", returncode=1)

        result = resize.shrink_last_partition(ctx, file_target, tail=MIB)

        assert result.outcome == ResizeOutcome.SKIPPED
        assert len([c for c in e2fs_tools.commands("resize2fs") if "-P" in c]) == 2

    def test_resize_failure_releases_loop(self, ctx, file_target, inspect, e2fs_tools):
        """Test a failing resize2fs is fatal but the loop device is released."""
        e2fs_tools.handler(
            "resize2fs",
            lambda command: (RESIZE2FS_MIN_OUTPUT, 0, "") if "-P" in command else ("", 1, "No space"),
        )

        with pytest.raises(ExternalToolFailure, match="No space"):
            resize.shrink_last_partition(ctx, file_target, tail=MIB)

        assert ctx.loop_device is None
        assert ["losetup", "--detach", "/dev/loop7"] in e2fs_tools.commands("losetup")
        assert e2fs_tools.commands("parted") == []

    def test_logical_partition_and_container_shrink(self, ctx, file_target, logical_inspect, e2fs_tools):
        """Test a logical last partition is shrunk, then its extended partition."""
        end = 24576 * 512 + 6000 * 4096 + MIB

        result = resize.shrink_last_partition(ctx, file_target, tail=MIB)

        assert result.outcome == ResizeOutcome.SHRUNK
        assert result.new_end_byte == end
        assert [call[-2:] for call in e2fs_tools.commands("parted")] == [
            ["5", f"{end - 1}B"],
            ["2", f"{end - 1}B"],
        ]

    def test_device_is_rescanned(self, ctx, device_target, inspect, e2fs_tools):
        """Test the kernel re-reads a shrunk device's table."""
        resize.shrink_last_partition(ctx, device_target, tail=MIB)

        assert e2fs_tools.commands("partprobe") == [["/usr/bin/partprobe", "/dev/sdz"]]


class TestDryRun:
    """Tests for the dry-run mode of the shrink algorithm."""

    def test_planned_without_mutation(self, ctx, file_target, mocker, e2fs_tools):
        """Test a dry run never checks, resizes, edits tables or moves GPT headers."""
        mocker.patch(
            "ddarch.storage.resize.geometry.inspect", return_value=make_table(TableKind.GPT)
        )

        result = resize.shrink_last_partition(ctx, file_target, tail=MIB, dry_run=True)

        assert result.outcome == ResizeOutcome.PLANNED
        assert result.new_end_byte == SHRUNK_END_BYTE
        assert e2fs_tools.commands("e2fsck") == []
        assert _resize_calls(e2fs_tools) == []
        assert e2fs_tools.commands("parted") == []
        assert e2fs_tools.commands("sgdisk") == []
        assert ctx.loop_device is None

    def test_dry_run_never_checks(self, ctx, file_target, inspect, e2fs_tools):
        """Test an unavailable estimate skips instead of running e2fsck."""
        e2fs_tools.queue("resize2fs", "", returncode=1)

        result = resize.shrink_last_partition(ctx, file_target, tail=MIB, dry_run=True)

        assert result.outcome == ResizeOutcome.SKIPPED
        assert e2fs_tools.commands("e2fsck") == []

    def test_estimate_shrunk_end(self, ctx, file_target, inspect, e2fs_tools):
        assert resize.estimate_shrunk_end(ctx, file_target, tail=MIB) == SHRUNK_END_BYTE

    def test_estimate_shrunk_end_skipped(self, ctx, file_target, mocker, fake_tools):
        mocker.patch(
            "ddarch.storage.resize.geometry.inspect", return_value=make_table(fs2="xfs")
        )

        assert resize.estimate_shrunk_end(ctx, file_target, tail=MIB) is None

    def test_dry_run_matches_real_shrink(self, ctx, file_target, inspect, e2fs_tools):
        """Test the estimate equals the end a real shrink produces."""
        planned = resize.shrink_last_partition(ctx, file_target, tail=MIB, dry_run=True)
        shrunk = resize.shrink_last_partition(ctx, file_target, tail=MIB)

        assert planned.new_end_byte == shrunk.new_end_byte


class TestExtendLastPartition:
    """Tests for resize.extend_last_partition."""

    def test_extends_partition_and_filesystem(self, ctx, file_target, inspect, e2fs_tools):
        """Test parted grows to the end, then e2fsck and resize2fs fill it."""
        result = resize.extend_last_partition(ctx, file_target)

        assert result.outcome == ResizeOutcome.EXTENDED
        assert e2fs_tools.commands("parted")[0] == [
            "/usr/bin/parted", "--script", "--", file_target.path, "resizepart", "2", "-1",
        ]
        assert _resize_calls(e2fs_tools) == [["/usr/bin/resize2fs", "/dev/loop7"]]
        assert len(e2fs_tools.commands("e2fsck")) == 1
        assert ctx.loop_device is None

    def test_file_is_not_rescanned(self, ctx, file_target, inspect, e2fs_tools):
        resize.extend_last_partition(ctx, file_target)

        assert e2fs_tools.commands("partprobe") == []

    def test_device_is_rescanned(self, ctx, device_target, inspect, e2fs_tools):
        resize.extend_last_partition(ctx, device_target)

        assert e2fs_tools.commands("partprobe") == [["/usr/bin/partprobe", "/dev/sdz"]]

    def test_gpt_relocates_backup(self, ctx, file_target, mocker, e2fs_tools):
        mocker.patch(
            "ddarch.storage.resize.geometry.inspect", return_value=make_table(TableKind.GPT)
        )

        resize.extend_last_partition(ctx, file_target)

        assert e2fs_tools.calls[0][1] == "--move-second-header"

    def test_non_ext_filesystem_not_grown(self, ctx, file_target, mocker, e2fs_tools):
        """Test a non-ext partition is extended with its filesystem left alone."""
        mocker.patch(
            "ddarch.storage.resize.geometry.inspect", return_value=make_table(fs2="ntfs")
        )

        result = resize.extend_last_partition(ctx, file_target)

        assert result.outcome == ResizeOutcome.EXTENDED
        assert _resize_calls(e2fs_tools) == []
        assert e2fs_tools.commands("losetup") == []

    def test_filesystem_failure_is_tolerated(self, ctx, file_target, inspect, e2fs_tools):
        """Test a failing resize2fs reports FAILED instead of raising."""
        e2fs_tools.set("resize2fs", "", returncode=1, stderr="bad superblock")

        result = resize.extend_last_partition(ctx, file_target)

        assert result.outcome == ResizeOutcome.FAILED
        assert "bad superblock" in result.reason
        assert ctx.loop_device is None

    def test_check_failure_is_tolerated(self, ctx, file_target, inspect, e2fs_tools):
        e2fs_tools.set("e2fsck", "", returncode=8, stderr="operational error")

        result = resize.extend_last_partition(ctx, file_target)

        assert result.outcome == ResizeOutcome.FAILED
        assert _resize_calls(e2fs_tools) == []

    def test_partition_table_failure_is_fatal(self, ctx, file_target, inspect, e2fs_tools):
        e2fs_tools.set("parted", "", returncode=1, stderr="Error: Can't have overlapping partitions.")

        with pytest.raises(ExternalToolFailure):
            resize.extend_last_partition(ctx, file_target)

    def test_logical_partition_grows_inside_container(self, ctx, file_target, logical_inspect, e2fs_tools):
        """Test the extended partition is grown first, then the logical one and its filesystem."""
        result = resize.extend_last_partition(ctx, file_target)

        assert result.outcome == ResizeOutcome.EXTENDED
        assert [call[-2] for call in e2fs_tools.commands("parted")] == ["2", "5"]
        assert _resize_calls(e2fs_tools) == [["/usr/bin/resize2fs", "/dev/loop7"]]
        assert e2fs_tools.commands("losetup")[0][4] == str(24576 * 512)
