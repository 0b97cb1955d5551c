"""Archive pipeline: turn an image file or block device into an archive.

Three paths, chosen from the input kind and ``--in-place``:

- device, in place: shrink, zero-fill, then stream ``dd`` straight into the
  archiver (or into a tar member of the streamed length) and extend the
  partition back. No image copy is written.
- any input, not in place: clone into the working directory and run the
  file path on the copy. The copy is always deleted afterwards.
- file, in place: shrink, zero-fill and truncate the input itself, then
  compress it and delete it.

Shrink, zero-fill and truncate can each be switched off. Running the
pipeline on an image that was already prepared leaves it as it is.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ddarch.app.context import OperationContext
from ddarch.domain import ArchiveOptions, ArchiveType, ImageTarget, ResizeResult
from ddarch.logging import LoggerFactory

from . import compression, geometry, image_ops, resize
from .command_runners import run_into_sink, run_pipeline
from .compression import IMAGE_SUFFIX
from .exceptions import GeometryUnavailable, UsageError

log = LoggerFactory.for_archive()


@dataclass
class ArchiveReport:
    """What an archive run did to its input and where the result went."""

    output: Path
    shrink: Optional[ResizeResult] = None
    zeroed_bytes: int = 0
    image_bytes: Optional[int] = None
    extend: Optional[ResizeResult] = None


def entry_name(opts: ArchiveOptions) -> str:
    return f"{opts.name}{IMAGE_SUFFIX}"


def _shrink(ctx: OperationContext, target: ImageTarget, opts: ArchiveOptions, report: ArchiveReport) -> None:
    if not opts.resize:
        log.info("Partition shrink disabled")
        return
    report.shrink = resize.shrink_last_partition(ctx, target, tail=opts.resizepart_tail)
    log.info(f"Shrink: {report.shrink.outcome.value} ({report.shrink.reason})")


def _zero(ctx: OperationContext, target: ImageTarget, opts: ArchiveOptions, report: ArchiveReport) -> None:
    if not opts.zero:
        log.info("Zero fill disabled")
        return
    report.zeroed_bytes = image_ops.zero_fill(ctx, target)
    log.info(f"Zero fill wrote {report.zeroed_bytes} bytes")


def prepare_image_file(
    ctx: OperationContext,
    target: ImageTarget,
    opts: ArchiveOptions,
    report: ArchiveReport,
) -> None:
    """Shrink, zero-fill and truncate an image file in place."""
    _shrink(ctx, target, opts, report)
    _zero(ctx, target, opts, report)
    if opts.truncate:
        report.image_bytes = image_ops.truncate_image(ctx, target, tail=opts.truncate_tail)
    else:
        log.info("Truncation disabled")


def _finish_file(source: Path, opts: ArchiveOptions) -> Path:
    """Move or compress a prepared image into the output path."""
    output = Path(opts.output_path)
    if opts.arch_type == ArchiveType.NONE:
        log.info(f"Moving {source} to {output}")
        shutil.move(str(source), str(output))
        return output
    return compression.compress_file(source, output, opts.arch_type)


def archive_via_clone(
    ctx: OperationContext, target: ImageTarget, opts: ArchiveOptions
) -> ArchiveReport:
    """Clone the input into the working directory and archive the copy."""
    if ctx.work_dir is None:
        raise ValueError("cloning needs a working directory")
    image = Path(ctx.work_dir) / entry_name(opts)
    report = ArchiveReport(output=Path(opts.output_path))
    try:
        image_ops.clone_to_image(
            ctx,
            target,
            image,
            skip_unpartitioned=opts.skip_unpartitioned,
            extra_args=opts.dd_args,
        )
        copy = geometry.resolve_target(ctx, str(image))
        prepare_image_file(ctx, copy, opts, report)
        report.output = _finish_file(image, opts)
    finally:
        compression.remove_if_exists(image)
        if image in ctx.temp_files:
            ctx.temp_files.remove(image)
    return report


def archive_file_in_place(
    ctx: OperationContext, target: ImageTarget, opts: ArchiveOptions
) -> ArchiveReport:
    """Prepare the input image itself, then compress and remove it.

    With ArchiveType.NONE the prepared input is the result.
    """
    source = Path(target.path)
    report = ArchiveReport(output=Path(opts.output_path))
    prepare_image_file(ctx, target, opts, report)
    if opts.arch_type == ArchiveType.NONE:
        log.info(f"Prepared image kept in place at {source}")
        report.output = source
        return report
    report.output = compression.compress_file(source, Path(opts.output_path), opts.arch_type)
    log.info(f"Removing input image {source}")
    source.unlink()
    return report


def _stream_length(ctx: OperationContext, target: ImageTarget, opts: ArchiveOptions) -> Optional[int]:
    if not opts.truncate:
        return None
    try:
        table = geometry.inspect(ctx, target)
    except GeometryUnavailable as error:
        log.warning(f"Streaming the whole device: {error}")
        return None
    return image_ops.truncation_length(table, opts.truncate_tail)


def archive_device_in_place(
    ctx: OperationContext, target: ImageTarget, opts: ArchiveOptions
) -> ArchiveReport:
    """Shrink the device itself and stream its used part into the archive.

    The last partition is extended back to the end of the device once the
    stream has finished, whether or not it succeeded.

    Raises:
        UsageError: If the format cannot be streamed or the user declines
    """
    if not opts.arch_type.streamable:
        raise UsageError(
            f"--in-place on a device cannot produce '{opts.arch_type.value}' output"
        )
    if not ctx.confirm(f"{target.path} will be modified in place. Continue?"):
        raise UsageError("In-place archive cancelled")
    if not ctx.confirm(f"Really shrink and zero-fill partitions on {target.path}?"):
        raise UsageError("In-place archive cancelled")

    report = ArchiveReport(output=Path(opts.output_path))
    _shrink(ctx, target, opts, report)
    try:
        _zero(ctx, target, opts, report)
        length = _stream_length(ctx, target, opts)
        report.image_bytes = length or target.size_bytes
        producer = image_ops.build_dd_command(
            target.path, count_bytes=length, extra_args=opts.dd_args
        )
        log.info(f"Streaming {report.image_bytes} bytes of {target.path} into {opts.output_path}")
        if opts.arch_type.tar_based:
            size = report.image_bytes

            def write_tar(stream):
                compression.write_tar_stream(
                    stream, opts.output_path, entry_name(opts), size, opts.arch_type
                )

            run_into_sink(producer, write_tar, title="Archiving", total_bytes=size)
        else:
            consumer = compression.stream_compress_command(
                opts.output_path, entry_name(opts), opts.arch_type
            )
            run_pipeline(
                producer, consumer, title="Archiving", total_bytes=report.image_bytes
            )
    finally:
        if report.shrink is not None and report.shrink.changed:
            log.info(f"Extending {target.path} back to its full size")
            report.extend = resize.extend_last_partition(ctx, target)
    return report


def archive(ctx: OperationContext, opts: ArchiveOptions) -> ArchiveReport:
    """Run the archive pipeline for ``opts``; see the module docstring."""
    target = geometry.resolve_target(ctx, opts.input_path)
    if opts.in_place and target.is_device:
        return archive_device_in_place(ctx, target, opts)
    if opts.in_place:
        return archive_file_in_place(ctx, target, opts)
    return archive_via_clone(ctx, target, opts)
