"""Narrow parsers for the text output of external disk tools.

One module per tool; each raises ``ValueError`` on output it does not
recognise and leaves the mapping to domain errors to the caller.
"""

from . import e2fs, fdisk, parted, sgdisk

__all__ = ["e2fs", "fdisk", "parted", "sgdisk"]
