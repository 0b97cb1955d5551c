"""Byte-level image preparation: clone, zero-fill, truncate."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Sequence

import psutil

from ddarch.app.context import OperationContext
from ddarch.config import settings
from ddarch.domain import ImageTarget, PartitionTable
from ddarch.logging import LoggerFactory

from . import geometry, loop, mount, partition_table
from .command_runners import require_tool, run_checked_with_streaming_progress, run_command

log = LoggerFactory.for_storage()

ZERO_FILL_NAME = "ddarch.zero"
ZERO_FILL_BLOCK = 1024 * 1024


def dd_block_size() -> str:
    return str(settings.get_setting("dd_block_size", settings.DEFAULT_DD_BLOCK_SIZE))


def build_dd_command(
    source: str,
    sink: Optional[str] = None,
    *,
    count_bytes: Optional[int] = None,
    extra_args: Sequence[str] = (),
    fsync: bool = True,
) -> list[str]:
    """dd copying ``source`` to ``sink`` (stdout when None), optionally bounded."""
    command = [require_tool("dd"), f"if={source}"]
    if sink is not None:
        command.append(f"of={sink}")
    command += [f"bs={dd_block_size()}", "status=progress"]
    if count_bytes is not None:
        command += ["iflag=count_bytes", f"count={count_bytes}"]
    if sink is not None and fsync:
        command.append("conv=fsync")
    command += list(extra_args)
    return command


def clone_length(table: PartitionTable) -> int:
    """Bytes to copy when skipping unpartitioned space.

    GPT images keep room after the last partition for the backup table.
    """
    return table.end_of_data_byte + table.gpt_reservation_bytes


def clone_to_image(
    ctx: OperationContext,
    target: ImageTarget,
    destination: Path,
    *,
    skip_unpartitioned: bool = False,
    extra_args: Sequence[str] = (),
) -> Path:
    """Copy ``target`` into a private image file.

    With ``skip_unpartitioned`` only the bytes up to the end of the last
    partition are copied, and a GPT backup header is rebuilt at the new end.
    """
    count = None
    table = None
    if skip_unpartitioned:
        table = geometry.inspect(ctx, target)
        count = clone_length(table)
        log.info(f"Cloning {target.path} up to byte {count} into {destination}")
    else:
        log.info(f"Cloning {target.path} into {destination}")
    ctx.temp_files.append(destination)
    run_checked_with_streaming_progress(
        build_dd_command(
            target.path, str(destination), count_bytes=count, extra_args=extra_args
        ),
        title="Cloning",
        total_bytes=count or target.size_bytes,
    )
    if table is not None and table.is_gpt:
        partition_table.relocate_gpt_backup(str(destination))
    return destination


def _fill_with_zeros(directory: str) -> int:
    """Write zeros into a file until the filesystem is full; returns bytes."""
    free = psutil.disk_usage(directory).free
    count = free // ZERO_FILL_BLOCK
    filler = os.path.join(directory, ZERO_FILL_NAME)
    if count <= 0:
        return 0
    result = run_command(
        [
            require_tool("dd"),
            "if=/dev/zero",
            f"of={filler}",
            f"bs={ZERO_FILL_BLOCK}",
            f"count={count}",
        ]
    )
    if result.returncode != 0:
        # running out of space before count is reached is expected
        log.debug(f"Zero fill stopped early: {(result.stderr or '').strip()}")
    written = os.path.getsize(filler) if os.path.exists(filler) else 0
    mount.sync()
    if os.path.exists(filler):
        os.remove(filler)
    mount.sync()
    return written


def zero_fill(ctx: OperationContext, target: ImageTarget) -> int:
    """Zero the free space of every Linux data partition.

    Returns the total number of zero bytes written.
    """
    if ctx.mnt_dir is None:
        raise ValueError("zero fill needs a mount directory")
    table = geometry.inspect(ctx, target)
    total = 0
    for part in table.partitions:
        if not part.is_linux_data:
            log.debug(f"Not zeroing partition {part.index} ({part.type_label})")
            continue
        log.info(f"Zeroing free space of partition {part.index}")
        with loop.loop_binding(
            ctx,
            target.path,
            offset=part.start_byte,
            size_limit=part.size_bytes,
            sector_size=target.sector_size,
        ) as binding:
            mount.mount(ctx, binding.device, ctx.mnt_dir)
            try:
                total += _fill_with_zeros(str(ctx.mnt_dir))
            finally:
                mount.unmount(ctx)
    return total


def truncation_length(table: PartitionTable, tail: int) -> int:
    return table.end_of_data_byte + tail + table.gpt_reservation_bytes


def truncate_image(ctx: OperationContext, target: ImageTarget, *, tail: int) -> int:
    """Cut an image file right after its last partition plus ``tail``.

    Returns the new length; unchanged when truncation would not shrink it.
    """
    if not target.is_file:
        raise ValueError(f"Only image files can be truncated: {target.path}")
    table = geometry.inspect(ctx, target)
    current = os.path.getsize(target.path)
    length = truncation_length(table, tail)
    if length >= current:
        log.warning(
            f"Truncate skipped: {target.path} is {current} bytes, "
            f"data ends at {length} bytes"
        )
        return current
    log.info(f"Truncating {target.path} from {current} to {length} bytes")
    os.truncate(target.path, length)
    if table.is_gpt:
        partition_table.relocate_gpt_backup(target.path)
    return length
