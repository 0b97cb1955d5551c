"""Top-level archive and restore runs.

Each run follows the same outline::

    preconditions -> lease workspace -> (space check) -> pipeline -> cleanup

Cleanup always runs, including on SIGINT, SIGTERM and SIGHUP, which are
turned into SystemExit for the duration of the run. It releases the loop
device, unmounts the mount directory, removes temporary image files and
removes the leased directories when they are empty.
"""

from __future__ import annotations

import os
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from ddarch.domain import ArchiveOptions, RestoreOptions
from ddarch.logging import LoggerFactory, operation_context
from ddarch.storage import archive, geometry, loop, mount, restore, space, validation
from ddarch.storage.archive import ArchiveReport
from ddarch.storage.restore import RestoreReport

from . import workspace
from .context import OperationContext
from .workspace import WorkspaceLease

log = LoggerFactory.for_system()

HANDLED_SIGNALS = tuple(
    sig for sig in (signal.SIGINT, signal.SIGTERM, getattr(signal, "SIGHUP", None)) if sig
)


def _exit_on_signal(signum, _frame):
    raise SystemExit(128 + signum)


@contextmanager
def signals_as_exit() -> Iterator[None]:
    previous = {}
    for sig in HANDLED_SIGNALS:
        try:
            previous[sig] = signal.signal(sig, _exit_on_signal)
        except ValueError:
            # not the main thread; signals keep their default handling
            pass
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def cleanup(ctx: OperationContext, lease: Optional[WorkspaceLease]) -> list[Path]:
    """Release every resource of the run. Returns lingering directories."""
    mount.release(ctx)
    loop.release(ctx)
    for path in reversed(ctx.temp_files):
        try:
            if os.path.lexists(path):
                os.remove(path)
                log.debug(f"Removed temporary file {path}")
        except OSError as error:
            log.warning(f"Unable to remove temporary file {path}: {error}")
    ctx.temp_files.clear()

    lingering = []
    if lease is not None:
        lingering = lease.release()
        ctx.work_dir = None
        ctx.mnt_dir = None
    exclude = tuple(lingering)
    for path in workspace.find_lingering(exclude=exclude) + lingering:
        log.warning(f"Lingering temporary directory: {path}")
    return lingering


def _lease(ctx: OperationContext, work_dir=None, mnt_dir=None) -> WorkspaceLease:
    lease = workspace.acquire(work_dir=work_dir, mnt_dir=mnt_dir)
    ctx.work_dir = lease.work_dir
    ctx.mnt_dir = lease.mnt_dir
    return lease


def run_archive(
    ctx: OperationContext,
    opts: ArchiveOptions,
    *,
    work_dir: Optional[str] = None,
    mnt_dir: Optional[str] = None,
) -> ArchiveReport:
    """Archive ``opts.input_path`` into ``opts.output_path``.

    Raises:
        DdarchError: Any precondition or pipeline failure
    """
    lease = None
    with signals_as_exit():
        try:
            with operation_context("archive", input=opts.input_path, output=opts.output_path):
                validation.validate_privileges(ctx)
                validation.validate_archive_operation(ctx, opts)
                lease = _lease(ctx, work_dir, mnt_dir)
                if opts.space_check:
                    target = geometry.resolve_target(ctx, opts.input_path)
                    space.validate_space(
                        ctx, target, opts, os.path.dirname(os.path.abspath(opts.output_path))
                    )
                else:
                    log.info("Space check disabled")
                report = archive.archive(ctx, opts)
                log.info(f"Archive written to {report.output}")
                return report
        finally:
            cleanup(ctx, lease)


def run_restore(
    ctx: OperationContext,
    opts: RestoreOptions,
    *,
    work_dir: Optional[str] = None,
    mnt_dir: Optional[str] = None,
) -> RestoreReport:
    """Restore ``opts.input_path`` onto the block device ``opts.output_path``.

    Raises:
        DdarchError: Any precondition or pipeline failure
    """
    lease = None
    with signals_as_exit():
        try:
            with operation_context("restore", input=opts.input_path, output=opts.output_path):
                validation.validate_privileges(ctx)
                validation.validate_restore_operation(ctx, opts)
                lease = _lease(ctx, work_dir, mnt_dir)
                report = restore.restore(ctx, opts)
                if report.verify_failed:
                    log.error(
                        "Filesystem check failed on partition(s) "
                        + ", ".join(str(index) for index in report.verify_failed)
                    )
                return report
        finally:
            cleanup(ctx, lease)
