"""Domain model for archive and restore operations.

Type-safe objects for what the external partitioning and filesystem tools
report, so geometry travels through the pipelines as values instead of
loose dicts of parsed columns.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


# ==============================================================================
# Targets
# ==============================================================================


class TargetKind(Enum):
    """What an input or output path points at."""

    DEVICE = "device"
    FILE = "file"


@dataclass(frozen=True)
class ImageTarget:
    """A block device or regular image file, resolved once per operation."""

    path: str
    kind: TargetKind
    sector_size: int
    size_bytes: int

    @property
    def is_device(self) -> bool:
        return self.kind == TargetKind.DEVICE

    @property
    def is_file(self) -> bool:
        return self.kind == TargetKind.FILE


# ==============================================================================
# Partition Table
# ==============================================================================


class TableKind(Enum):
    """Partition table flavour."""

    MBR = "mbr"
    GPT = "gpt"

    @classmethod
    def from_label(cls, label: str) -> TableKind:
        """Map a disklabel name as printed by fdisk/sfdisk/parted.

        Raises:
            ValueError: If the label is not dos/msdos/mbr/gpt
        """
        normalized = (label or "").strip().lower()
        if normalized in ("dos", "msdos", "mbr"):
            return cls.MBR
        if normalized == "gpt":
            return cls.GPT
        raise ValueError(f"Unsupported partition table label: {label!r}")


# Heuristic on the partition tool's summary; the superblock is never read.
_EXT_FAMILY_RE = re.compile(r"\bext[234]\b")
_LINUX_DATA_RE = re.compile(r"^Linux( filesystem)?$")
_FAT32_RE = re.compile(r"FAT32")
# MBR extended partition types as fdisk names them
_CONTAINER_RE = re.compile(r"^(Extended|W95 Ext'd \(LBA\)|Linux extended)$")


@dataclass(frozen=True)
class Partition:
    """One partition table entry.

    ``index`` matches the numbering used by fdisk/parted (1-based).
    """

    index: int
    start_sector: int
    sectors: int
    sector_size: int
    type_label: str = ""
    fs_label: str = ""

    @property
    def start_byte(self) -> int:
        return self.start_sector * self.sector_size

    @property
    def size_bytes(self) -> int:
        return self.sectors * self.sector_size

    @property
    def end_byte(self) -> int:
        """First byte after the partition."""
        return self.start_byte + self.size_bytes

    @property
    def end_sector(self) -> int:
        """Last sector of the partition (inclusive)."""
        return self.start_sector + self.sectors - 1

    @property
    def is_ext_family(self) -> bool:
        return bool(_EXT_FAMILY_RE.search(self.fs_label or ""))

    @property
    def is_linux_data(self) -> bool:
        return bool(_LINUX_DATA_RE.match((self.type_label or "").strip()))

    @property
    def is_fat32(self) -> bool:
        return bool(_FAT32_RE.search(self.type_label or ""))

    @property
    def is_container(self) -> bool:
        """MBR extended partition holding the logical partitions."""
        return bool(_CONTAINER_RE.match((self.type_label or "").strip()))

    def contains(self, other: Partition) -> bool:
        return (
            other is not self
            and self.start_byte <= other.start_byte
            and other.end_byte <= self.end_byte
        )


@dataclass(frozen=True)
class PartitionTable:
    """Partition geometry derived by inspection. Never mutated directly."""

    kind: TableKind
    sector_size: int
    partitions: tuple[Partition, ...] = field(default_factory=tuple)
    first_usable_lba: int = 0

    @property
    def is_gpt(self) -> bool:
        return self.kind == TableKind.GPT

    @property
    def last_partition(self) -> Partition:
        """Data partition with the highest end offset.

        Extended containers are passed over, so on MBR disks with logical
        partitions this is the last logical one. Ties go to the later start.

        Raises:
            ValueError: If the table has no partitions
        """
        if not self.partitions:
            raise ValueError("Partition table is empty")
        candidates = [part for part in self.partitions if not part.is_container]
        return max(
            candidates or self.partitions,
            key=lambda part: (part.end_byte, part.start_byte, part.index),
        )

    def container_of(self, part: Partition) -> Optional[Partition]:
        """Extended partition enclosing ``part``, if it is a logical one."""
        for candidate in self.partitions:
            if candidate.is_container and candidate.contains(part):
                return candidate
        return None

    @property
    def end_of_data_sector(self) -> int:
        """Last sector used by any partition, containers included (inclusive)."""
        return max(part.end_sector for part in self.partitions)

    @property
    def end_of_data_byte(self) -> int:
        """First byte after the last partition."""
        return (self.end_of_data_sector + 1) * self.sector_size

    @property
    def gpt_reservation_bytes(self) -> int:
        """Room the backup GPT needs after the last partition (0 for MBR)."""
        if not self.is_gpt:
            return 0
        return self.first_usable_lba * self.sector_size

    def get(self, index: int) -> Optional[Partition]:
        for part in self.partitions:
            if part.index == index:
                return part
        return None


# ==============================================================================
# Resize
# ==============================================================================


@dataclass(frozen=True)
class ShrinkPlan:
    """Target geometry for shrinking the last partition.

    ``target_end_byte`` is exclusive: the partition will span
    ``[start_byte, target_end_byte)``.
    """

    partition: Partition
    min_blocks: int
    block_size: int
    tail: int = 0

    def __post_init__(self) -> None:
        if self.min_blocks < 0 or self.block_size <= 0 or self.tail < 0:
            raise ValueError(
                f"Invalid shrink plan: blocks={self.min_blocks} "
                f"block_size={self.block_size} tail={self.tail}"
            )

    @property
    def target_fs_bytes(self) -> int:
        return self.min_blocks * self.block_size

    @property
    def target_size_bytes(self) -> int:
        return self.target_fs_bytes + self.tail

    @property
    def target_end_byte(self) -> int:
        return self.partition.start_byte + self.target_size_bytes

    @property
    def abandoned(self) -> bool:
        """True when shrinking would not make the partition smaller."""
        return self.partition.size_bytes <= self.target_size_bytes


class ResizeOutcome(Enum):
    """Tagged result of a resize engine run."""

    SKIPPED = "skipped"
    PLANNED = "planned"  # dry run, nothing mutated
    SHRUNK = "shrunk"
    EXTENDED = "extended"
    FAILED = "failed"


@dataclass(frozen=True)
class ResizeResult:
    outcome: ResizeOutcome
    reason: str = ""
    plan: Optional[ShrinkPlan] = None
    new_end_byte: Optional[int] = None

    @property
    def changed(self) -> bool:
        return self.outcome in (ResizeOutcome.SHRUNK, ResizeOutcome.EXTENDED)


# ==============================================================================
# Archive / Restore options
# ==============================================================================


class ArchiveType(Enum):
    """Output archive format."""

    SEVEN_ZIP = "7z"
    ZIP = "zip"
    TGZ = "tgz"
    TAR = "tar"
    NONE = "none"

    @property
    def suffix(self) -> str:
        return {
            ArchiveType.SEVEN_ZIP: ".7z",
            ArchiveType.ZIP: ".zip",
            ArchiveType.TGZ: ".tar.gz",
            ArchiveType.TAR: ".tar",
            ArchiveType.NONE: "",
        }[self]

    @property
    def compresses(self) -> bool:
        return self in (ArchiveType.SEVEN_ZIP, ArchiveType.ZIP, ArchiveType.TGZ)

    @property
    def streamable(self) -> bool:
        """Can be produced from a byte stream without an image file on disk."""
        return self != ArchiveType.NONE

    @property
    def tar_based(self) -> bool:
        return self in (ArchiveType.TGZ, ArchiveType.TAR)


@dataclass(frozen=True)
class ArchiveOptions:
    input_path: str
    output_path: str
    arch_type: ArchiveType = ArchiveType.SEVEN_ZIP
    name: str = "image"
    dd_args: tuple[str, ...] = ()
    resizepart_tail: int = 1024 * 1024
    truncate_tail: int = 1024 * 1024
    skip_unpartitioned: bool = False
    resize: bool = True
    truncate: bool = True
    zero: bool = True
    space_check: bool = True
    in_place: bool = False


@dataclass(frozen=True)
class RestoreOptions:
    input_path: str
    output_path: str
    dd_args: tuple[str, ...] = ()
    extend: bool = True
    verify: bool = False
