"""Mount and unmount loop-bound partitions on the working mount directory.

Functions:
    - read_mounts(): Parse /proc/mounts into (source, mountpoint) pairs
    - is_mountpoint_active(): Check whether a directory is a mountpoint
    - mounted_partitions(): Mountpoints of a device and its partitions
    - mount(): Attach a device node to a directory
    - unmount(): Detach whatever the context mounted
    - release(): Best-effort unmount for cleanup paths
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

from ddarch.app.context import OperationContext
from ddarch.logging import LoggerFactory

from .command_runners import require_tool, run_checked_command, run_command

log = LoggerFactory.for_storage()

PROC_MOUNTS = "/proc/mounts"

_SHELL_METACHARACTERS = (";", "&", "|", "$", "`", "\n", "\r")


def _validate_device(device: str) -> None:
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device}")
    if any(char in device for char in _SHELL_METACHARACTERS):
        raise ValueError(f"Device path contains invalid characters: {device}")


def read_mounts(proc_mounts: Optional[str] = None) -> list[tuple[str, str]]:
    entries = []
    try:
        with open(proc_mounts or PROC_MOUNTS, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1:
                    # /proc/mounts escapes spaces as \040
                    entries.append((parts[0], parts[1].replace("\\040", " ")))
    except FileNotFoundError:
        return []
    return entries


def is_mountpoint_active(mountpoint: Union[str, Path]) -> bool:
    """Check if a mountpoint is currently active."""
    target = os.path.realpath(str(mountpoint))
    entries = read_mounts()
    if not entries:
        return os.path.ismount(target)
    return any(os.path.realpath(point) == target for _, point in entries)


def mounted_partitions(device: str) -> list[str]:
    """Mountpoints of ``device`` itself or any node whose name extends it.

    ``/dev/sdb`` matches ``/dev/sdb`` and ``/dev/sdb1``;
    ``/dev/mmcblk0`` matches ``/dev/mmcblk0p2``.
    """
    real_device = os.path.realpath(device)
    mountpoints = []
    for source, point in read_mounts():
        if not source.startswith("/dev/"):
            continue
        real_source = os.path.realpath(source)
        if real_source == real_device:
            mountpoints.append(point)
            continue
        if not real_source.startswith(real_device):
            continue
        suffix = real_source[len(real_device):]
        if real_device[-1:].isdigit():
            # loop1 must not match loop10
            is_partition = suffix.startswith("p") and suffix[1:].isdigit()
        else:
            is_partition = suffix.isdigit()
        if is_partition:
            mountpoints.append(point)
    return mountpoints


def mount(ctx: OperationContext, device: str, directory: Union[str, Path]) -> str:
    """Mount ``device`` on ``directory`` and record it on the context.

    Raises:
        ValueError: If the device path is invalid
        ExternalToolFailure: If mount fails
    """
    _validate_device(device)
    directory = str(directory)
    os.makedirs(directory, exist_ok=True)
    run_checked_command([require_tool("mount"), device, directory])
    ctx.mounted_at = directory
    log.debug(f"Mounted {device} on {directory}")
    return directory


def unmount(ctx: OperationContext) -> None:
    """Unmount what the context mounted; a failure is fatal."""
    if not ctx.mounted_at:
        return
    directory = ctx.mounted_at
    run_checked_command([require_tool("umount"), directory])
    ctx.mounted_at = None
    log.debug(f"Unmounted {directory}")


def release(ctx: OperationContext) -> bool:
    """Best-effort unmount of the context's mount dir for cleanup paths."""
    targets = []
    if ctx.mounted_at:
        targets.append(ctx.mounted_at)
    if ctx.mnt_dir and str(ctx.mnt_dir) not in targets:
        if is_mountpoint_active(ctx.mnt_dir):
            targets.append(str(ctx.mnt_dir))
    ok = True
    for directory in targets:
        result = run_command(["umount", directory])
        if result.returncode != 0:
            log.warning(
                f"Unable to unmount {directory}: "
                f"{(result.stderr or '').strip() or 'umount failed'}"
            )
            ok = False
    if ok:
        ctx.mounted_at = None
    return ok


def sync() -> None:
    run_command(["sync"])
