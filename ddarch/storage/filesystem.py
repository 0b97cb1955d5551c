"""ext2/3/4 filesystem operations backed by e2fsprogs, plus generic fsck."""

from __future__ import annotations

from typing import Optional

from ddarch.logging import LoggerFactory

from .command_runners import require_tool, run_checked_command, run_command
from .exceptions import ExternalToolFailure
from .parsers import e2fs

log = LoggerFactory.for_resize()

# e2fsck: 1 = errors corrected, 2 = corrected and reboot advised
E2FSCK_OK_CODES = (0, 1, 2)


def estimate_min_blocks(device: str) -> Optional[int]:
    """Minimum block count the filesystem could shrink to.

    Returns None when resize2fs cannot tell, typically because the
    filesystem needs a forced check first.
    """
    result = run_command([require_tool("resize2fs"), "-P", device])
    if result.returncode != 0:
        log.debug(
            f"resize2fs -P failed on {device}: "
            f"{(result.stderr or result.stdout or '').strip()}"
        )
        return None
    try:
        return e2fs.minimum_blocks(result.stdout)
    except ValueError as error:
        log.debug(f"Unexpected resize2fs -P output on {device}: {error}")
        return None


def block_size(device: str) -> int:
    """Filesystem block size in bytes.

    Raises:
        ExternalToolFailure: If dumpe2fs fails or prints no block size
    """
    command = [require_tool("dumpe2fs"), "-h", device]
    output = run_checked_command(command)
    try:
        return e2fs.block_size(output)
    except ValueError as error:
        raise ExternalToolFailure(command, output=str(error)) from error


def check(device: str) -> None:
    """Forced consistency check repairing whatever it can.

    Raises:
        ExternalToolFailure: If e2fsck leaves errors uncorrected
    """
    command = [require_tool("e2fsck"), "-f", "-y", device]
    result = run_command(command)
    if result.returncode not in E2FSCK_OK_CODES:
        raise ExternalToolFailure(
            command,
            returncode=result.returncode,
            output=(result.stderr or result.stdout or "").strip(),
        )


def resize(device: str, blocks: Optional[int] = None) -> None:
    """Resize to ``blocks`` filesystem blocks, or to fill the device.

    Raises:
        ExternalToolFailure: If resize2fs fails
    """
    command = [require_tool("resize2fs"), device]
    if blocks is not None:
        command.append(str(blocks))
    run_checked_command(command)


def verify(device: str) -> bool:
    """Read-only check of any filesystem fsck knows about."""
    result = run_command(["fsck", "-n", device])
    if result.returncode != 0:
        log.debug(
            f"fsck -n {device} exited with {result.returncode}: "
            f"{(result.stdout or '').strip()} {(result.stderr or '').strip()}"
        )
    return result.returncode == 0
