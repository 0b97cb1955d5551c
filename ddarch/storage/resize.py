"""Shrink and extend the last partition of an image or block device.

Shrink runs through these states::

    Inspecting -> BoundToLoop -> Estimating -> Decision
        -> Resizing filesystem -> Resizing partition table entry -> Unbound

and returns a tagged ResizeResult instead of raising for the cases where
nothing should be done (unsupported filesystem, nothing to gain). A dry
run stops after Estimating and reports where the partition would end,
without mutating the target.

Only the last partition (highest end offset) is ever resized, and only
ext2/3/4 filesystems are resized. When it is a logical partition its
extended container follows it.
"""

from __future__ import annotations

from typing import Optional

from ddarch.app.context import OperationContext
from ddarch.domain import ImageTarget, Partition, ResizeOutcome, ResizeResult, ShrinkPlan
from ddarch.logging import LoggerFactory

from . import filesystem, geometry, loop, partition_table
from .exceptions import ExternalToolFailure, ResizeSkipped

log = LoggerFactory.for_resize()


def _bind_partition(ctx: OperationContext, target: ImageTarget, part: Partition):
    return loop.loop_binding(
        ctx,
        target.path,
        offset=part.start_byte,
        size_limit=part.size_bytes,
        sector_size=target.sector_size,
    )


def _require_ext_family(part: Partition) -> None:
    if not part.is_ext_family:
        label = part.fs_label or "unknown"
        raise ResizeSkipped(
            f"Partition {part.index} has filesystem '{label}', only ext2/3/4 can be resized"
        )


def _estimate_min_blocks(
    ctx: OperationContext, device: str, *, dry_run: bool
) -> tuple[int, bool]:
    """Return (minimum block count, whether a forced check already ran).

    The estimate is retried exactly once after a forced check. A dry run
    never checks, since e2fsck -y may write to the filesystem.
    """
    blocks = filesystem.estimate_min_blocks(device)
    if blocks is not None:
        return blocks, False
    if dry_run:
        raise ResizeSkipped(
            "Unable to estimate the minimum filesystem size without a consistency check"
        )
    log.warning(f"Could not estimate minimum filesystem size of {device}")
    if not ctx.confirm(f"Run a filesystem check (e2fsck -f -y) on {device}?"):
        raise ResizeSkipped("Filesystem check declined, minimum size unknown")
    filesystem.check(device)
    blocks = filesystem.estimate_min_blocks(device)
    if blocks is None:
        raise ResizeSkipped("Minimum filesystem size unknown even after a check")
    return blocks, True


def plan_shrink(
    part: Partition, min_blocks: int, block_size: int, tail: int
) -> ShrinkPlan:
    """Build the plan; abandoned plans are not errors, callers decide."""
    return ShrinkPlan(
        partition=part, min_blocks=min_blocks, block_size=block_size, tail=tail
    )


def shrink_last_partition(
    ctx: OperationContext,
    target: ImageTarget,
    *,
    tail: int,
    dry_run: bool = False,
) -> ResizeResult:
    """Shrink the last partition to its filesystem's minimum size plus ``tail``.

    Raises:
        GeometryUnavailable: If the partition table cannot be read
        ExternalToolFailure: If a mutating tool fails
    """
    table = geometry.inspect(ctx, target)
    part = table.last_partition
    try:
        _require_ext_family(part)

        if table.is_gpt and not dry_run:
            # the virtual end of the disk moves next; keep the backup table valid
            partition_table.relocate_gpt_backup(target.path)

        with _bind_partition(ctx, target, part) as binding:
            min_blocks, checked = _estimate_min_blocks(
                ctx, binding.device, dry_run=dry_run
            )
            block_size = filesystem.block_size(binding.device)
            plan = plan_shrink(part, min_blocks, block_size, tail)
            log.debug(
                f"Partition {part.index}: {part.size_bytes} bytes now, "
                f"minimum {plan.target_fs_bytes} bytes + {tail} tail"
            )

            if dry_run:
                new_end = part.end_byte if plan.abandoned else plan.target_end_byte
                return ResizeResult(
                    ResizeOutcome.PLANNED,
                    reason="dry run",
                    plan=plan,
                    new_end_byte=new_end,
                )

            if plan.abandoned:
                raise ResizeSkipped(
                    f"Partition {part.index} is already at most "
                    f"{plan.target_size_bytes} bytes, nothing to shrink"
                )

            if not checked:
                filesystem.check(binding.device)
            log.info(
                f"Shrinking filesystem on partition {part.index} to "
                f"{plan.min_blocks} blocks of {plan.block_size} bytes"
            )
            filesystem.resize(binding.device, plan.min_blocks)
            loop.unbind(ctx)

        log.info(
            f"Moving end of partition {part.index} to byte {plan.target_end_byte}"
        )
        partition_table.shrink_entry(target.path, part.index, plan.target_end_byte)
        container = table.container_of(part)
        if container is not None:
            log.info(f"Moving end of extended partition {container.index} along")
            partition_table.shrink_entry(target.path, container.index, plan.target_end_byte)
        if target.is_device:
            partition_table.rescan(target.path)
    except ResizeSkipped as skipped:
        log.warning(f"Shrink skipped: {skipped.reason}")
        return ResizeResult(
            ResizeOutcome.SKIPPED, reason=skipped.reason, new_end_byte=part.end_byte
        )

    return ResizeResult(
        ResizeOutcome.SHRUNK,
        reason=f"{part.size_bytes - plan.target_size_bytes} bytes reclaimed",
        plan=plan,
        new_end_byte=plan.target_end_byte,
    )


def estimate_shrunk_end(
    ctx: OperationContext, target: ImageTarget, *, tail: int
) -> Optional[int]:
    """End byte of the last partition after a shrink, without shrinking.

    Returns None when a shrink would be skipped.
    """
    result = shrink_last_partition(ctx, target, tail=tail, dry_run=True)
    if result.outcome != ResizeOutcome.PLANNED:
        return None
    return result.new_end_byte


def _grow_filesystem(ctx: OperationContext, target: ImageTarget, part: Partition) -> Optional[str]:
    """Check and grow the filesystem; returns an error message on failure."""
    with _bind_partition(ctx, target, part) as binding:
        try:
            filesystem.check(binding.device)
        except ExternalToolFailure as error:
            log.error(f"Filesystem check before growing failed: {error}")
            return str(error)
        try:
            filesystem.resize(binding.device)
        except ExternalToolFailure as error:
            log.error(f"Filesystem resize failed: {error}")
            return str(error)
    return None


def extend_last_partition(ctx: OperationContext, target: ImageTarget) -> ResizeResult:
    """Grow the last partition, then its filesystem, to the end of the disk.

    Growing the filesystem is best effort: the partition is already
    extended, so a failure there is logged and reported as FAILED.

    Raises:
        GeometryUnavailable: If the partition table cannot be read
        ExternalToolFailure: If the partition table update fails
    """
    table = geometry.inspect(ctx, target)
    part = table.last_partition

    if table.is_gpt:
        partition_table.relocate_gpt_backup(target.path)

    container = table.container_of(part)
    if container is not None:
        # a logical partition can only grow inside its extended partition
        log.info(f"Extending partition {container.index} to the end of {target.path}")
        partition_table.grow_entry_to_end(target.path, container.index)
    log.info(f"Extending partition {part.index} to the end of {target.path}")
    partition_table.grow_entry_to_end(target.path, part.index)
    if target.is_device:
        partition_table.rescan(target.path)

    grown = geometry.inspect(ctx, target).get(part.index) or part
    log.info(f"Partition {part.index} is now {grown.size_bytes} bytes")

    if not grown.is_ext_family:
        log.warning(
            f"Partition {part.index} filesystem '{grown.fs_label or 'unknown'}' "
            "is not ext2/3/4, filesystem left at its old size"
        )
        return ResizeResult(
            ResizeOutcome.EXTENDED,
            reason="partition extended, filesystem not resizable",
            new_end_byte=grown.end_byte,
        )

    error = _grow_filesystem(ctx, target, grown)
    if error:
        return ResizeResult(ResizeOutcome.FAILED, reason=error, new_end_byte=grown.end_byte)
    return ResizeResult(
        ResizeOutcome.EXTENDED,
        reason="partition and filesystem extended",
        new_end_byte=grown.end_byte,
    )
