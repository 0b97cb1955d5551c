"""Parser for the human-readable ``parted --script <disk> print`` summary.

Example input::

    Model:  (file)
    Disk /tmp/test.img: 10.5MB
    Sector size (logical/physical): 512B/512B
    Partition Table: msdos
    Disk Flags:

    Number  Start   End     Size    Type     File system  Flags
     1      1049kB  3146kB  2097kB  primary  ext4
     2      3146kB  8389kB  5243kB  primary  ext4

The filesystem column is not fixed-width across parted versions, so only
the tokens of the partition's line are inspected.
"""

from __future__ import annotations

import re

_FS_TOKEN_RE = re.compile(
    r"\b(ext[234]|fat(?:16|32)|ntfs|btrfs|xfs|linux-swap\S*|hfs\+?|exfat)\b"
)


def partition_lines(output: str, index: int) -> list[str]:
    """All lines of the summary that describe partition ``index``."""
    lines = []
    for line in output.splitlines():
        columns = line.split()
        if columns and columns[0] == str(index):
            lines.append(line)
    return lines


def filesystem_label(output: str, index: int) -> str:
    """Filesystem token from the last line describing partition ``index``.

    Returns an empty string when the line carries no known filesystem name.
    """
    lines = partition_lines(output, index)
    if not lines:
        return ""
    match = _FS_TOKEN_RE.search(lines[-1])
    return match.group(1) if match else ""
