"""Partition geometry of an image file or block device.

Geometry is derived from three tools:

- ``fdisk -l``: sector size, disklabel type, partition start/size/type
- ``parted print``: the filesystem column, used to tell ext2/3/4 apart
- ``sgdisk --print`` (GPT only): first usable sector, i.e. how much room
  the backup table needs at the end of the disk

Filesystem detection is a heuristic on parted's summary, without reading the superblock:
a filesystem parted names like ext2/3/4 would be treated as one.
"""

from __future__ import annotations

import os
import stat

from ddarch.app.context import OperationContext
from ddarch.domain import ImageTarget, Partition, PartitionTable, TableKind, TargetKind
from ddarch.logging import LoggerFactory

from .command_runners import require_tool, run_checked_command
from .exceptions import ExternalToolFailure, GeometryUnavailable, InputNotFoundError
from .parsers import fdisk, parted, sgdisk

log = LoggerFactory.for_storage()


def _run_inspection(path: str, command: list[str]) -> str:
    try:
        return run_checked_command(command)
    except ExternalToolFailure as error:
        raise GeometryUnavailable(path, str(error)) from error


def require_tool_for(path: str, name: str) -> str:
    try:
        return require_tool(name)
    except ExternalToolFailure as error:
        raise GeometryUnavailable(path, f"{name} not found") from error


def _fdisk_listing(path: str) -> fdisk.FdiskListing:
    output = _run_inspection(
        path, [require_tool_for(path, "fdisk"), "-l", "-o", fdisk.LISTING_COLUMNS, path]
    )
    try:
        return fdisk.parse_listing(output, disk_path=path)
    except ValueError as error:
        raise GeometryUnavailable(path, str(error)) from error


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except FileNotFoundError:
        return False


def device_size_bytes(path: str) -> int:
    output = _run_inspection(
        path, [require_tool_for(path, "blockdev"), "--getsize64", path]
    )
    try:
        return int(output.strip())
    except ValueError as error:
        raise GeometryUnavailable(path, f"unexpected blockdev output: {output!r}") from error


def sector_size(path: str) -> int:
    """Logical sector size reported by fdisk."""
    return _fdisk_listing(path).sector_size


def resolve_target(ctx: OperationContext, path: str) -> ImageTarget:
    """Resolve ``path`` into an ImageTarget.

    Raises:
        InputNotFoundError: If the path does not exist
        GeometryUnavailable: If the sector size cannot be read
    """
    if not os.path.exists(path):
        raise InputNotFoundError(path)
    if is_block_device(path):
        kind = TargetKind.DEVICE
        size = device_size_bytes(path)
    else:
        kind = TargetKind.FILE
        size = os.path.getsize(path)
    target = ImageTarget(
        path=path, kind=kind, sector_size=sector_size(path), size_bytes=size
    )
    log.debug(
        f"Resolved {path}: {target.kind.value}, {target.size_bytes} bytes, "
        f"{target.sector_size}-byte sectors"
    )
    return target


def inspect(ctx: OperationContext, target: ImageTarget) -> PartitionTable:
    """Read the partition table of ``target``.

    Raises:
        GeometryUnavailable: If a tool is missing or fails, its output cannot
            be parsed, or the table has no partitions
    """
    path = target.path
    listing = _fdisk_listing(path)
    if not listing.rows:
        raise GeometryUnavailable(path, "no partitions found")
    if not listing.label:
        raise GeometryUnavailable(path, "no disklabel type reported")
    try:
        kind = TableKind.from_label(listing.label)
    except ValueError as error:
        raise GeometryUnavailable(path, str(error)) from error

    summary = _run_inspection(path, [require_tool_for(path, "parted"), "--script", path, "print"])

    first_usable_lba = 0
    if kind == TableKind.GPT:
        gpt_output = _run_inspection(path, [require_tool_for(path, "sgdisk"), "--print", path])
        try:
            first_usable_lba = sgdisk.first_usable_sector(gpt_output)
        except ValueError as error:
            raise GeometryUnavailable(path, str(error)) from error

    partitions = tuple(
        Partition(
            index=row.index,
            start_sector=row.start,
            sectors=row.sectors,
            sector_size=listing.sector_size,
            type_label=row.type_label,
            fs_label=parted.filesystem_label(summary, row.index),
        )
        for row in sorted(listing.rows, key=lambda row: row.start)
    )
    table = PartitionTable(
        kind=kind,
        sector_size=listing.sector_size,
        partitions=partitions,
        first_usable_lba=first_usable_lba,
    )
    for part in partitions:
        log.debug(
            f"{path} partition {part.index}: start={part.start_sector} "
            f"sectors={part.sectors} type={part.type_label!r} fs={part.fs_label!r}"
        )
    return table
