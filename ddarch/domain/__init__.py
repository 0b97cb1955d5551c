"""Domain models for archive and restore operations."""

from __future__ import annotations

from .models import (
    ArchiveOptions,
    ArchiveType,
    ImageTarget,
    Partition,
    PartitionTable,
    ResizeOutcome,
    ResizeResult,
    RestoreOptions,
    ShrinkPlan,
    TableKind,
    TargetKind,
)


__all__ = [
    "ArchiveOptions",
    "ArchiveType",
    "ImageTarget",
    "Partition",
    "PartitionTable",
    "ResizeOutcome",
    "ResizeResult",
    "RestoreOptions",
    "ShrinkPlan",
    "TableKind",
    "TargetKind",
]
