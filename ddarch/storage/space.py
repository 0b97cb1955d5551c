"""Disk space estimation for a planned archive run.

Fails fast before a long destructive operation: the working directory
must hold the temporary image copy and the output directory the final
archive. When both directories sit on the same device the requirements
are added up rather than checked twice.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import psutil

from ddarch.app.context import OperationContext
from ddarch.config import settings
from ddarch.domain import ArchiveOptions, ImageTarget, PartitionTable
from ddarch.logging import LoggerFactory

from . import geometry, resize
from .exceptions import GeometryUnavailable, InsufficientSpaceError
from .image_ops import clone_length

log = LoggerFactory.for_storage()

MB = 1024 * 1024


def compression_ratio() -> float:
    return settings.get_float("compression_ratio", settings.DEFAULT_COMPRESSION_RATIO)


@dataclass(frozen=True)
class SpaceEstimate:
    prepared_bytes: int
    cache_bytes: int
    output_bytes: int


def estimate_prepared_size(
    ctx: OperationContext,
    target: ImageTarget,
    table: Optional[PartitionTable],
    opts: ArchiveOptions,
) -> int:
    """Size of the uncompressed image the pipeline will archive."""
    if not opts.skip_unpartitioned:
        return target.size_bytes
    if table is None:
        table = geometry.inspect(ctx, target)
    if opts.resize:
        shrunk_end = resize.estimate_shrunk_end(ctx, target, tail=opts.resizepart_tail)
        if shrunk_end is not None:
            return shrunk_end + table.gpt_reservation_bytes
        log.debug("Dry-run shrink unavailable, estimating from current geometry")
    return clone_length(table)


def estimate_cache_size(prepared: int, opts: ArchiveOptions) -> int:
    if opts.in_place:
        return 0
    return prepared


def estimate_output_size(prepared: int, opts: ArchiveOptions, ratio: float) -> int:
    if opts.arch_type.compresses:
        return int(prepared * ratio)
    if opts.in_place:
        # the prepared input itself becomes the output
        return 0
    return prepared


def estimate(ctx: OperationContext, target: ImageTarget, opts: ArchiveOptions) -> SpaceEstimate:
    table = geometry.inspect(ctx, target) if opts.skip_unpartitioned else None
    prepared = estimate_prepared_size(ctx, target, table, opts)
    return SpaceEstimate(
        prepared_bytes=prepared,
        cache_bytes=estimate_cache_size(prepared, opts),
        output_bytes=estimate_output_size(prepared, opts, compression_ratio()),
    )


def mount_point_of(path: Union[str, Path]) -> str:
    path = os.path.realpath(str(path))
    while not os.path.ismount(path):
        parent = os.path.dirname(path)
        if parent == path:
            break
        path = parent
    return path


def device_of(path: str) -> int:
    return os.stat(path).st_dev


def _existing_ancestor(path: Union[str, Path]) -> str:
    path = os.path.realpath(str(path))
    while not os.path.exists(path):
        parent = os.path.dirname(path)
        if parent == path:
            break
        path = parent
    return path


def check_space(
    work_dir: Union[str, Path],
    out_dir: Union[str, Path],
    cache_bytes: int,
    output_bytes: int,
) -> None:
    """Raise InsufficientSpaceError if either directory is too small."""
    work_dir = _existing_ancestor(work_dir)
    out_dir = _existing_ancestor(out_dir)

    if device_of(work_dir) == device_of(out_dir):
        requirements = [(work_dir, cache_bytes + output_bytes)]
    else:
        requirements = [(work_dir, cache_bytes), (out_dir, output_bytes)]

    for directory, required in requirements:
        if required <= 0:
            continue
        available = psutil.disk_usage(directory).free
        log.debug(
            f"Space on {mount_point_of(directory)}: required {required // MB} MB, "
            f"available {available // MB} MB"
        )
        if required > available:
            raise InsufficientSpaceError(
                mount_point_of(directory),
                required_mb=-(-required // MB),
                available_mb=available // MB,
            )


def validate_space(
    ctx: OperationContext,
    target: ImageTarget,
    opts: ArchiveOptions,
    out_dir: Union[str, Path],
) -> SpaceEstimate:
    """Estimate requirements for ``opts`` and check them against free space.

    Raises:
        InsufficientSpaceError: If the work or output device is short
    """
    try:
        result = estimate(ctx, target, opts)
    except GeometryUnavailable as error:
        if opts.skip_unpartitioned:
            raise
        log.debug(f"Geometry unavailable during estimate: {error}")
        result = SpaceEstimate(target.size_bytes, target.size_bytes, target.size_bytes)
    log.info(
        f"Estimated space: {result.cache_bytes // MB} MB cache, "
        f"{result.output_bytes // MB} MB output"
    )
    check_space(ctx.work_dir or out_dir, out_dir, result.cache_bytes, result.output_bytes)
    return result
