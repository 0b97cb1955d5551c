"""Parser for ``fdisk -l -o Device,Start,End,Sectors,Type`` listings.

Example input::

    Disk test.img: 10 MiB, 10485760 bytes, 20480 sectors
    Units: sectors of 1 * 512 = 512 bytes
    Sector size (logical/physical): 512 bytes / 512 bytes
    I/O size (minimum/optimal): 512 bytes / 512 bytes
    Disklabel type: dos
    Disk identifier: 0x8f1a2b3c

    Device    Start   End Sectors Type
    test.img1  2048  6143    4096 Linux
    test.img2  6144 16383   10240 Linux
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

LISTING_COLUMNS = "Device,Start,End,Sectors,Type"

_DISK_RE = re.compile(r"^Disk\s+.+?:.*?(\d+)\s+bytes,\s+(\d+)\s+sectors")
_SECTOR_SIZE_RE = re.compile(r"^Sector size \(logical/physical\):\s*(\d+)\s+bytes")
_UNITS_RE = re.compile(r"^Units:.*=\s*(\d+)\s+bytes")
_LABEL_RE = re.compile(r"^Disklabel type:\s*(\S+)")
_INDEX_RE = re.compile(r"p?(\d+)$")


@dataclass(frozen=True)
class FdiskRow:
    device: str
    index: int
    start: int
    end: int
    sectors: int
    type_label: str


@dataclass
class FdiskListing:
    sector_size: Optional[int] = None
    label: Optional[str] = None
    total_bytes: Optional[int] = None
    total_sectors: Optional[int] = None
    rows: list[FdiskRow] = field(default_factory=list)


def partition_index(device: str, disk_path: Optional[str] = None) -> int:
    """Extract the partition number from an fdisk device column.

    When ``disk_path`` is known the number is read from what follows it,
    so image names that end in digits are not misread.

    Raises:
        ValueError: If no partition number can be found
    """
    suffix = device
    if disk_path and device.startswith(disk_path):
        suffix = device[len(disk_path):]
    match = _INDEX_RE.search(suffix)
    if not match:
        raise ValueError(f"No partition number in device column: {device!r}")
    return int(match.group(1))


def parse_listing(output: str, disk_path: Optional[str] = None) -> FdiskListing:
    """Parse an fdisk listing restricted to the LISTING_COLUMNS columns.

    Raises:
        ValueError: On a header without sector size or a malformed row
    """
    listing = FdiskListing()
    in_table = False
    table_done = False

    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            # warnings such as "Partition table entries are not in disk
            # order." follow the table after a blank line
            if in_table:
                in_table = False
                table_done = True
            continue
        if table_done:
            continue
        if in_table:
            columns = stripped.split(None, 4)
            if len(columns) < 4:
                raise ValueError(f"Malformed fdisk partition row: {stripped!r}")
            device, start, end, sectors = columns[:4]
            type_label = columns[4] if len(columns) == 5 else ""
            try:
                row = FdiskRow(
                    device=device,
                    index=partition_index(device, disk_path),
                    start=int(start),
                    end=int(end),
                    sectors=int(sectors),
                    type_label=type_label.strip(),
                )
            except ValueError as error:
                raise ValueError(
                    f"Malformed fdisk partition row: {stripped!r}"
                ) from error
            listing.rows.append(row)
            continue
        if stripped.startswith("Device") and "Start" in stripped:
            in_table = True
            continue

        match = _DISK_RE.match(stripped)
        if match:
            listing.total_bytes = int(match.group(1))
            listing.total_sectors = int(match.group(2))
            continue
        match = _SECTOR_SIZE_RE.match(stripped)
        if match:
            listing.sector_size = int(match.group(1))
            continue
        match = _UNITS_RE.match(stripped)
        if match and listing.sector_size is None:
            listing.sector_size = int(match.group(1))
            continue
        match = _LABEL_RE.match(stripped)
        if match:
            listing.label = match.group(1)

    if listing.sector_size is None:
        raise ValueError("fdisk output has no sector size")
    return listing
