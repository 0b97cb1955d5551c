"""Restore pipeline: write an archive or raw image onto a block device.

The archive is decompressed on the fly into ``dd`` (no intermediate file),
then the last partition is grown to the end of the device and, on request,
each Linux or FAT32 partition is checked read-only.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from ddarch.app.context import OperationContext
from ddarch.domain import ImageTarget, Partition, ResizeResult, RestoreOptions
from ddarch.logging import LoggerFactory

from . import compression, filesystem, geometry, image_ops, loop, mount, resize
from .command_runners import run_checked_with_streaming_progress, run_pipeline
from .exceptions import ExternalToolFailure, GeometryUnavailable

log = LoggerFactory.for_restore()


@dataclass
class RestoreReport:
    device: str
    archive_type: Optional[str] = None
    extend: Optional[ResizeResult] = None
    verified: dict[int, bool] = field(default_factory=dict)

    @property
    def verify_failed(self) -> list[int]:
        return [index for index, ok in self.verified.items() if not ok]


def write_image(ctx: OperationContext, opts: RestoreOptions) -> Optional[str]:
    """Stream the (decompressed) image onto the device.

    Returns the detected archive type, or None for a raw image.
    """
    kind = compression.detect_archive_type(opts.input_path)
    decompress = compression.decompress_command(opts.input_path)
    sink = image_ops.build_dd_command(
        "/dev/stdin" if decompress else opts.input_path,
        opts.output_path,
        extra_args=opts.dd_args,
    )
    log.info(
        f"Writing {opts.input_path} ({kind or 'raw image'}) to {opts.output_path}"
    )
    if decompress is None:
        run_checked_with_streaming_progress(
            sink, title="Restoring", total_bytes=os.path.getsize(opts.input_path)
        )
    else:
        run_pipeline(decompress, sink, title="Restoring", consumer_progress=True)
    mount.sync()
    return kind


def _verifiable(part: Partition) -> bool:
    return part.is_linux_data or part.is_fat32


def verify_partitions(ctx: OperationContext, target: ImageTarget) -> dict[int, bool]:
    """Run ``fsck -n`` on every Linux or FAT32 partition.

    Failures are reported per partition and never abort the run.
    """
    results: dict[int, bool] = {}
    try:
        table = geometry.inspect(ctx, target)
    except GeometryUnavailable as error:
        log.error(f"Verify skipped: {error}")
        return results
    for part in table.partitions:
        if not _verifiable(part):
            log.debug(f"Not verifying partition {part.index} ({part.type_label})")
            continue
        try:
            with loop.loop_binding(
                ctx,
                target.path,
                offset=part.start_byte,
                size_limit=part.size_bytes,
                sector_size=target.sector_size,
            ) as binding:
                ok = filesystem.verify(binding.device)
        except ExternalToolFailure as error:
            log.error(f"Partition {part.index}: unable to bind for verify: {error}")
            ok = False
        results[part.index] = ok
        if ok:
            log.info(f"Partition {part.index}: filesystem check passed")
        else:
            log.error(f"Partition {part.index}: filesystem check FAILED")
    return results


def restore(ctx: OperationContext, opts: RestoreOptions) -> RestoreReport:
    """Run the restore pipeline for ``opts``.

    Raises:
        ExternalToolFailure: If decompression or the device write fails
        GeometryUnavailable: If the written table cannot be read for extend
    """
    report = RestoreReport(device=opts.output_path)
    report.archive_type = write_image(ctx, opts)

    target = geometry.resolve_target(ctx, opts.output_path)
    if opts.extend:
        report.extend = resize.extend_last_partition(ctx, target)
        log.info(f"Extend: {report.extend.outcome.value} ({report.extend.reason})")
    else:
        log.info("Partition extend disabled")

    if opts.verify:
        report.verified = verify_partitions(ctx, target)
    return report
