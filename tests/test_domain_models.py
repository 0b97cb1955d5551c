"""Tests for domain models."""

import pytest

from conftest import make_table
from ddarch.domain import (
    ArchiveType,
    ImageTarget,
    Partition,
    PartitionTable,
    ResizeOutcome,
    ResizeResult,
    ShrinkPlan,
    TableKind,
    TargetKind,
)


class TestImageTarget:
    """Tests for ImageTarget."""

    def test_kind_properties(self):
        """Test is_device and is_file."""
        device = ImageTarget("/dev/sdb", TargetKind.DEVICE, 512, 1000)
        image = ImageTarget("a.img", TargetKind.FILE, 512, 1000)

        assert device.is_device and not device.is_file
        assert image.is_file and not image.is_device


class TestTableKind:
    """Tests for TableKind.from_label."""

    @pytest.mark.parametrize("label", ["dos", "msdos", "MBR", " dos "])
    def test_mbr_labels(self, label):
        assert TableKind.from_label(label) == TableKind.MBR

    def test_gpt_label(self):
        assert TableKind.from_label("gpt") == TableKind.GPT

    def test_unsupported_label(self):
        """Test labels other than MBR and GPT are rejected."""
        with pytest.raises(ValueError, match="sun"):
            TableKind.from_label("sun")


class TestPartition:
    """Tests for Partition geometry and classification."""

    def test_byte_geometry(self):
        """Test start, size and both end conventions."""
        part = Partition(index=2, start_sector=22528, sectors=81920, sector_size=512)

        assert part.start_byte == 11534336
        assert part.size_bytes == 41943040
        assert part.end_byte == 53477376
        assert part.end_sector == 104447

    def test_4k_sectors(self):
        """Test byte offsets follow the sector size."""
        part = Partition(index=1, start_sector=256, sectors=1024, sector_size=4096)

        assert part.start_byte == 1048576
        assert part.end_byte == 1048576 + 4194304

    @pytest.mark.parametrize("fs_label,expected", [
        ("ext2", True), ("ext3", True), ("ext4", True),
        ("fat32", False), ("btrfs", False), ("", False), ("ext4dev", False),
    ])
    def test_ext_family(self, fs_label, expected):
        """Test the ext2/3/4 heuristic on the filesystem column."""
        assert Partition(1, 0, 1, 512, fs_label=fs_label).is_ext_family is expected

    @pytest.mark.parametrize("type_label,expected", [
        ("Linux", True),
        ("Linux filesystem", True),
        ("Linux swap / Solaris", False),
        ("Linux swap", False),
        ("W95 FAT32 (LBA)", False),
    ])
    def test_linux_data(self, type_label, expected):
        """Test only Linux data partitions qualify, not swap."""
        assert Partition(1, 0, 1, 512, type_label=type_label).is_linux_data is expected

    def test_fat32(self):
        assert Partition(1, 0, 1, 512, type_label="W95 FAT32 (LBA)").is_fat32
        assert not Partition(1, 0, 1, 512, type_label="EFI System").is_fat32


class TestPartitionTable:
    """Tests for PartitionTable derived values."""

    def test_last_partition_by_end_offset(self):
        """Test the last partition is the one ending last, not listed last."""
        table = PartitionTable(
            kind=TableKind.MBR,
            sector_size=512,
            partitions=(
                Partition(2, 2048, 100, 512),
                Partition(1, 8192, 100, 512),
            ),
        )

        assert table.last_partition.index == 1
        assert table.end_of_data_sector == 8291
        assert table.end_of_data_byte == 8292 * 512

    def test_logical_partition_beats_its_container(self):
        """Test an extended container ending with its last logical is passed over."""
        boot = Partition(1, 2048, 4096, 512, "W95 FAT32 (LBA)", "fat32")
        container = Partition(2, 6144, 14336, 512, "Extended")
        logical = Partition(5, 8192, 12288, 512, "Linux", "ext4")
        table = PartitionTable(
            kind=TableKind.MBR, sector_size=512, partitions=(boot, container, logical)
        )

        assert table.last_partition.index == 5
        assert table.container_of(logical) == container
        assert table.container_of(boot) is None
        assert table.end_of_data_sector == 20479

    def test_container_end_counts_as_data(self):
        """Test room left in the container after the last logical is kept."""
        table = PartitionTable(
            kind=TableKind.MBR,
            sector_size=512,
            partitions=(
                Partition(2, 6144, 20480, 512, "W95 Ext'd (LBA)"),
                Partition(5, 8192, 4096, 512, "Linux", "ext4"),
            ),
        )

        assert table.last_partition.index == 5
        assert table.end_of_data_sector == 26623

    @pytest.mark.parametrize("type_label,expected", [
        ("Extended", True),
        ("W95 Ext'd (LBA)", True),
        ("Linux extended", True),
        ("Linux extended boot", False),
        ("Linux", False),
    ])
    def test_container_types(self, type_label, expected):
        assert Partition(2, 0, 1, 512, type_label=type_label).is_container is expected

    def test_empty_table(self):
        """Test an empty table has no last partition."""
        with pytest.raises(ValueError):
            PartitionTable(kind=TableKind.MBR, sector_size=512).last_partition

    def test_gpt_reservation(self):
        """Test the backup table room is only reserved for GPT."""
        assert make_table(TableKind.GPT).gpt_reservation_bytes == 34 * 512
        assert make_table(TableKind.MBR).gpt_reservation_bytes == 0

    def test_get(self, mbr_table):
        assert mbr_table.get(2).start_sector == 22528
        assert mbr_table.get(9) is None


class TestShrinkPlan:
    """Tests for ShrinkPlan arithmetic."""

    def _part(self):
        return Partition(2, 22528, 81920, 512, "Linux", "ext4")

    def test_target_geometry(self):
        """Test filesystem bytes plus tail from the partition start."""
        plan = ShrinkPlan(self._part(), min_blocks=6000, block_size=4096, tail=1048576)

        assert plan.target_fs_bytes == 24576000
        assert plan.target_size_bytes == 25624576
        assert plan.target_end_byte == 11534336 + 25624576
        assert not plan.abandoned

    def test_tail_moves_end_exactly(self):
        """Test a larger tail moves the end by exactly that many bytes."""
        small = ShrinkPlan(self._part(), 6000, 4096, tail=0)
        large = ShrinkPlan(self._part(), 6000, 4096, tail=4096 * 3)

        assert large.target_end_byte - small.target_end_byte == 4096 * 3

    def test_abandoned_when_not_smaller(self):
        """Test a plan that would grow the partition is abandoned."""
        plan = ShrinkPlan(self._part(), min_blocks=9800, block_size=4096, tail=8 * 1048576)

        assert plan.target_size_bytes > self._part().size_bytes
        assert plan.abandoned

    def test_abandoned_when_equal(self):
        plan = ShrinkPlan(self._part(), min_blocks=10240, block_size=4096, tail=0)

        assert plan.target_size_bytes == self._part().size_bytes
        assert plan.abandoned

    @pytest.mark.parametrize("blocks,block_size,tail", [(-1, 4096, 0), (1, 0, 0), (1, 4096, -1)])
    def test_invalid_plan(self, blocks, block_size, tail):
        with pytest.raises(ValueError):
            ShrinkPlan(self._part(), blocks, block_size, tail)


class TestResizeResult:
    def test_changed(self):
        assert ResizeResult(ResizeOutcome.SHRUNK).changed
        assert ResizeResult(ResizeOutcome.EXTENDED).changed
        assert not ResizeResult(ResizeOutcome.SKIPPED).changed
        assert not ResizeResult(ResizeOutcome.PLANNED).changed
        assert not ResizeResult(ResizeOutcome.FAILED).changed


class TestArchiveType:
    """Tests for ArchiveType properties."""

    @pytest.mark.parametrize("kind,suffix", [
        (ArchiveType.SEVEN_ZIP, ".7z"),
        (ArchiveType.ZIP, ".zip"),
        (ArchiveType.TGZ, ".tar.gz"),
        (ArchiveType.TAR, ".tar"),
        (ArchiveType.NONE, ""),
    ])
    def test_suffix(self, kind, suffix):
        assert kind.suffix == suffix

    def test_compresses_and_streamable(self):
        assert ArchiveType.TGZ.compresses and ArchiveType.TGZ.streamable
        assert ArchiveType.SEVEN_ZIP.streamable and not ArchiveType.SEVEN_ZIP.tar_based
        assert not ArchiveType.TAR.compresses and ArchiveType.TAR.tar_based
        assert not ArchiveType.NONE.streamable
