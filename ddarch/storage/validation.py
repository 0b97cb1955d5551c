"""Precondition checks run before any destructive step.

Every function raises a specific exception from the exceptions module
rather than returning a boolean, so callers only handle the failure path.

Example:
    from ddarch.storage.validation import validate_restore_operation

    validate_restore_operation(ctx, opts)
    # safe to overwrite opts.output_path
"""

from __future__ import annotations

import os
from typing import Callable

from ddarch.app.context import OperationContext
from ddarch.domain import ArchiveOptions, ArchiveType, RestoreOptions
from ddarch.logging import LoggerFactory

from . import geometry, mount
from .compression import remove_if_exists
from .exceptions import (
    DeviceBusyError,
    InputNotFoundError,
    NotABlockDeviceError,
    OutputExistsError,
    PrivilegeError,
    UsageError,
)

log = LoggerFactory.for_system()


def _effective_uid() -> int:
    return os.geteuid()


def validate_privileges(
    ctx: OperationContext, uid_getter: Callable[[], int] = _effective_uid
) -> None:
    """Require root, or an explicit decision to continue without it.

    Raises:
        PrivilegeError: If not root and the user declines to continue
    """
    if uid_getter() == 0:
        return
    log.warning("Not running as root: loop devices, mounts and partition edits will fail")
    if not ctx.confirm("Continue without root privileges?"):
        raise PrivilegeError()


def validate_input_exists(path: str) -> None:
    if not path or not os.path.exists(path):
        raise InputNotFoundError(path)


def validate_output_absent(ctx: OperationContext, path: str) -> None:
    """Offer to remove an existing output.

    Raises:
        OutputExistsError: If the output exists and removal is declined
    """
    if not os.path.lexists(path):
        return
    if os.path.isdir(path) or geometry.is_block_device(path):
        raise OutputExistsError(path)
    if not ctx.confirm(f"Output {path} exists. Remove it?"):
        raise OutputExistsError(path)
    log.info(f"Removing existing output {path}")
    remove_if_exists(path)


def validate_output_directory(path: str) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    if not os.path.isdir(directory):
        raise UsageError(f"Output directory does not exist: {directory}")


def validate_device_unmounted(device: str) -> None:
    """Validate that a device and all its partitions are unmounted.

    Raises:
        DeviceBusyError: If the device or any partition is mounted
    """
    mountpoints = mount.mounted_partitions(device)
    if mountpoints:
        raise DeviceBusyError(device, f"mounted at {', '.join(mountpoints)}")


def validate_block_device(path: str) -> None:
    if not geometry.is_block_device(path):
        raise NotABlockDeviceError(path)


def validate_devices_different(source: str, destination: str) -> None:
    if os.path.realpath(source) == os.path.realpath(destination):
        raise UsageError(f"Input and output are the same: {source}")


def validate_archive_operation(ctx: OperationContext, opts: ArchiveOptions) -> None:
    """Perform all validations required before an archive run.

    Raises:
        Various exceptions from the exceptions module if validation fails
    """
    # 1. Input exists
    validate_input_exists(opts.input_path)

    # 2. Never archive onto the input itself
    validate_devices_different(opts.input_path, opts.output_path)

    # 3. Stream mode writes an archive, never a bare image
    if (
        opts.in_place
        and geometry.is_block_device(opts.input_path)
        and not opts.arch_type.streamable
    ):
        raise UsageError(
            f"--in-place on a device cannot produce '{opts.arch_type.value}' output"
        )

    # 4. A mounted device cannot be resized or zeroed safely
    if geometry.is_block_device(opts.input_path) and (opts.resize or opts.zero):
        validate_device_unmounted(opts.input_path)

    # 5. Output location
    if not (opts.in_place and opts.arch_type == ArchiveType.NONE):
        validate_output_directory(opts.output_path)
        validate_output_absent(ctx, opts.output_path)


def validate_restore_operation(ctx: OperationContext, opts: RestoreOptions) -> None:
    """Perform all validations required before a restore run.

    Raises:
        Various exceptions from the exceptions module if validation fails
    """
    validate_input_exists(opts.input_path)
    if not opts.output_path:
        raise UsageError("restore needs an output block device (-o)")
    validate_block_device(opts.output_path)
    validate_devices_different(opts.input_path, opts.output_path)
    validate_device_unmounted(opts.output_path)
    if not ctx.confirm(f"All data on {opts.output_path} will be overwritten. Continue?"):
        raise UsageError(f"Restore onto {opts.output_path} cancelled")
