"""Loop device bindings over byte ranges of images and devices.

Only one binding is open at a time. Its device node is kept on the
operation context (``ctx.loop_device``) so the top-level cleanup can always
release it, however the run ended.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from ddarch.app.context import OperationContext
from ddarch.logging import LoggerFactory

from .command_runners import require_tool, run_checked_command, run_command

log = LoggerFactory.for_storage()

DEFAULT_SECTOR_SIZE = 512


@dataclass(frozen=True)
class LoopBinding:
    device: str
    backing_path: str
    offset: int = 0
    size_limit: Optional[int] = None
    sector_size: Optional[int] = None


def build_losetup_command(
    losetup: str,
    backing_path: str,
    *,
    offset: int = 0,
    size_limit: Optional[int] = None,
    sector_size: Optional[int] = None,
) -> list[str]:
    command = [losetup, "--find", "--show", "--offset", str(offset)]
    if size_limit:
        command += ["--sizelimit", str(size_limit)]
    if sector_size and sector_size != DEFAULT_SECTOR_SIZE:
        command += ["--sector-size", str(sector_size)]
    command.append(backing_path)
    return command


def bind(
    ctx: OperationContext,
    backing_path: str,
    *,
    offset: int = 0,
    size_limit: Optional[int] = None,
    sector_size: Optional[int] = None,
) -> LoopBinding:
    """Attach ``backing_path[offset:offset+size_limit]`` to a free loop device."""
    if ctx.loop_device:
        log.debug(f"Releasing stale loop device {ctx.loop_device} before rebinding")
        release(ctx)
    losetup = require_tool("losetup")
    output = run_checked_command(
        build_losetup_command(
            losetup,
            backing_path,
            offset=offset,
            size_limit=size_limit,
            sector_size=sector_size,
        )
    )
    device = output.strip()
    ctx.loop_device = device
    log.debug(f"Bound {backing_path} at offset {offset} to {device}")
    return LoopBinding(
        device=device,
        backing_path=backing_path,
        offset=offset,
        size_limit=size_limit,
        sector_size=sector_size,
    )


def unbind(ctx: OperationContext) -> None:
    """Detach the current binding; a failure is fatal."""
    if not ctx.loop_device:
        return
    device = ctx.loop_device
    run_checked_command([require_tool("losetup"), "--detach", device])
    ctx.loop_device = None
    log.debug(f"Released loop device {device}")


def release(ctx: OperationContext) -> bool:
    """Best-effort detach used by cleanup paths. Returns True if released."""
    if not ctx.loop_device:
        return True
    device = ctx.loop_device
    result = run_command(["losetup", "--detach", device])
    if result.returncode != 0:
        log.warning(
            f"Unable to release loop device {device}: "
            f"{(result.stderr or '').strip() or 'losetup failed'}"
        )
        return False
    ctx.loop_device = None
    return True


@contextmanager
def loop_binding(
    ctx: OperationContext,
    backing_path: str,
    *,
    offset: int = 0,
    size_limit: Optional[int] = None,
    sector_size: Optional[int] = None,
) -> Iterator[LoopBinding]:
    """Bind for the duration of the block, releasing even on failure."""
    binding = bind(
        ctx,
        backing_path,
        offset=offset,
        size_limit=size_limit,
        sector_size=sector_size,
    )
    try:
        yield binding
    finally:
        if ctx.loop_device == binding.device:
            release(ctx)
