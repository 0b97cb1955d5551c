"""Parser for ``sgdisk --print`` output."""

from __future__ import annotations

import re

_USABLE_RE = re.compile(
    r"First usable sector is (\d+), last usable sector is (\d+)"
)


def usable_sectors(output: str) -> tuple[int, int]:
    """Return (first usable sector, last usable sector).

    Raises:
        ValueError: If sgdisk did not report the usable range
    """
    match = _USABLE_RE.search(output)
    if not match:
        raise ValueError("sgdisk output has no usable sector range")
    return int(match.group(1)), int(match.group(2))


def first_usable_sector(output: str) -> int:
    return usable_sectors(output)[0]
