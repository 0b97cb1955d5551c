"""Custom exceptions for archive and restore operations.

This module defines the error taxonomy used across ddarch. Every exception
carries the process exit code that ``main()`` reports when it escapes to the
top level.

Exception Hierarchy:
    DdarchError (base, exit 1)
        ├── UsageError
        │   └── UnknownOptionError (exit 3)
        ├── PreconditionError
        │   ├── InputNotFoundError
        │   ├── OutputExistsError
        │   ├── PrivilegeError
        │   ├── DeviceBusyError
        │   ├── NotABlockDeviceError
        │   └── InsufficientSpaceError
        ├── GeometryUnavailable
        ├── ResizeSkipped
        ├── ExternalToolFailure
        └── ArchiveWriteError

Usage:
    from ddarch.storage.exceptions import InsufficientSpaceError

    if required > available:
        raise InsufficientSpaceError("/tmp", required_mb, available_mb)
"""

from __future__ import annotations

from typing import Optional, Sequence


class DdarchError(Exception):
    """Base exception for all ddarch operations."""

    exit_code = 1


class UsageError(DdarchError):
    """Bad or missing arguments, unknown command."""


class UnknownOptionError(UsageError):
    """An option the command does not know about."""

    exit_code = 3

    def __init__(self, option: str):
        self.option = option
        super().__init__(f"Unknown option: {option}")


class PreconditionError(DdarchError):
    """Base exception for checks that run before any destructive step."""


class InputNotFoundError(PreconditionError):
    """Input file or device does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Input not found: {path}")


class OutputExistsError(PreconditionError):
    """Output exists and the user declined to remove it."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Output already exists: {path}")


class PrivilegeError(PreconditionError):
    """Not running as root and the user declined to continue."""

    def __init__(self, reason: str = "root privileges are required"):
        self.reason = reason
        super().__init__(f"Insufficient privileges: {reason}")


class DeviceBusyError(PreconditionError):
    """Device is currently in use or mounted."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class NotABlockDeviceError(PreconditionError):
    """A block device was required but something else was given."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Not a block device: {path}")


class InsufficientSpaceError(PreconditionError):
    """Estimated space requirement exceeds free space on a device."""

    def __init__(self, device_name: str, required_mb: int, available_mb: int):
        self.device_name = device_name
        self.required_mb = required_mb
        self.available_mb = available_mb
        super().__init__(
            f"Not enough space on {device_name}: "
            f"required {required_mb} MB, available {available_mb} MB "
            f"(short by {required_mb - available_mb} MB)"
        )


class GeometryUnavailable(DdarchError):
    """Partition geometry could not be inspected or parsed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Unable to read partition geometry of {path}: {reason}")


class ResizeSkipped(DdarchError):
    """A resize was not attempted. Not an error for the pipeline."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ExternalToolFailure(DdarchError):
    """An external tool returned a non-zero exit code or is missing."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int] = None,
        output: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = output or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class ArchiveWriteError(DdarchError):
    """An archive written by ddarch itself could not be completed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Unable to write archive {path}: {reason}")
