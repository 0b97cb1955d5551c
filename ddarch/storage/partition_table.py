"""Partition table mutations: entry resize, GPT backup relocation, rescan.

Geometry is never edited here directly; every change goes through parted
or sgdisk and callers re-inspect afterwards.
"""

from __future__ import annotations

import shutil

from ddarch.logging import LoggerFactory

from .command_runners import require_tool, run_checked_command, run_command

log = LoggerFactory.for_resize()


def relocate_gpt_backup(path: str) -> None:
    """Move the backup GPT header and entries to the true end of ``path``."""
    run_checked_command([require_tool("sgdisk"), "--move-second-header", path])
    log.debug(f"Relocated backup GPT header of {path}")


def build_shrink_command(parted: str, path: str, index: int, end_byte: int) -> list[str]:
    """parted invocation moving partition ``index`` to end at ``end_byte``.

    ``end_byte`` is exclusive; parted takes the inclusive last byte.
    """
    return [
        parted,
        "---pretend-input-tty",
        path,
        "unit",
        "B",
        "resizepart",
        str(index),
        f"{end_byte - 1}B",
    ]


def shrink_entry(path: str, index: int, end_byte: int) -> None:
    """Move the end of partition ``index``, confirming parted's warning."""
    command = build_shrink_command(require_tool("parted"), path, index, end_byte)
    # parted asks "Shrinking a partition can cause data loss, are you sure
    # you want to continue?" even for unused space
    run_checked_command(command, input_text="Yes\n")
    log.debug(f"Partition {index} of {path} now ends before byte {end_byte}")


def grow_entry_to_end(path: str, index: int) -> None:
    """Grow partition ``index`` up to the end of the disk.

    ``-1`` is parted's "one unit before the end" in its default MB unit.
    """
    run_checked_command(
        [require_tool("parted"), "--script", "--", path, "resizepart", str(index), "-1"]
    )
    log.debug(f"Partition {index} of {path} grown to the end of the disk")


def rescan(path: str) -> None:
    """Ask the kernel to re-read the partition table of a block device."""
    partprobe = shutil.which("partprobe")
    if partprobe:
        result = run_command([partprobe, path])
    else:
        result = run_command(["blockdev", "--rereadpt", path])
    if result.returncode != 0:
        log.warning(
            f"Partition rescan of {path} failed: "
            f"{(result.stderr or '').strip() or 'unknown error'}"
        )
    udevadm = shutil.which("udevadm")
    if udevadm:
        run_command([udevadm, "settle"])
