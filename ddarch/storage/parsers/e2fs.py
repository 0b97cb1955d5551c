"""Parsers for e2fsprogs output (resize2fs -P, dumpe2fs -h)."""

from __future__ import annotations

import re

_MIN_SIZE_RE = re.compile(r"Estimated minimum size of the filesystem:\s*(\d+)")
_BLOCK_SIZE_RE = re.compile(r"^Block size:\s*(\d+)", re.MULTILINE)


def minimum_blocks(output: str) -> int:
    """Parse ``resize2fs -P``.

    Raises:
        ValueError: If the estimate line is missing
    """
    match = _MIN_SIZE_RE.search(output)
    if not match:
        raise ValueError("resize2fs did not report a minimum size")
    return int(match.group(1))


def block_size(output: str) -> int:
    """Parse the ``Block size`` field of ``dumpe2fs -h``.

    Raises:
        ValueError: If the field is missing or zero
    """
    match = _BLOCK_SIZE_RE.search(output)
    if not match or int(match.group(1)) <= 0:
        raise ValueError("dumpe2fs did not report a block size")
    return int(match.group(1))

