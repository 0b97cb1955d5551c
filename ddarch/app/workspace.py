"""Working and mount directories of a run.

A lease records which directories this run created. On release a directory
is removed only if it is empty; anything left behind is reported as
lingering and never deleted, since it may hold a mounted filesystem or a
partially written image.
"""

from __future__ import annotations

import glob
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from ddarch.logging import LoggerFactory

log = LoggerFactory.for_system()

WORK_PREFIX = "ddarch-work."
MNT_PREFIX = "ddarch-mnt."


@dataclass
class LeasedDirectory:
    path: Path
    created: bool


@dataclass
class WorkspaceLease:
    work: LeasedDirectory
    mnt: LeasedDirectory
    lingering: List[Path] = field(default_factory=list)

    @property
    def work_dir(self) -> Path:
        return self.work.path

    @property
    def mnt_dir(self) -> Path:
        return self.mnt.path

    def release(self) -> List[Path]:
        """Remove the directories this run created, if empty.

        Returns the directories left in place.
        """
        self.lingering = []
        for leased in (self.mnt, self.work):
            if not leased.created or not leased.path.exists():
                continue
            try:
                leased.path.rmdir()
                log.debug(f"Removed {leased.path}")
            except OSError as error:
                log.warning(f"Directory {leased.path} not removed: {error.strerror}")
                self.lingering.append(leased.path)
        return self.lingering


def _lease_directory(
    requested: Optional[Union[str, Path]], prefix: str, base: Optional[str]
) -> LeasedDirectory:
    if requested:
        path = Path(requested)
        if path.is_dir():
            return LeasedDirectory(path=path, created=False)
        path.mkdir(parents=True)
        return LeasedDirectory(path=path, created=True)
    return LeasedDirectory(path=Path(tempfile.mkdtemp(prefix=prefix, dir=base)), created=True)


def acquire(
    work_dir: Optional[Union[str, Path]] = None,
    mnt_dir: Optional[Union[str, Path]] = None,
    base: Optional[str] = None,
) -> WorkspaceLease:
    """Lease the working and mount directories.

    Missing directories are created; without a path, a fresh one is made
    under ``base`` (the system temp dir by default).
    """
    work = _lease_directory(work_dir, WORK_PREFIX, base)
    try:
        mnt = _lease_directory(mnt_dir, MNT_PREFIX, base)
    except OSError:
        if work.created:
            work.path.rmdir()
        raise
    log.debug(f"Working directory {work.path}, mount directory {mnt.path}")
    return WorkspaceLease(work=work, mnt=mnt)


def find_lingering(base: Optional[str] = None, exclude: tuple = ()) -> List[Path]:
    """Temporary directories left behind by earlier runs."""
    base = base or tempfile.gettempdir()
    excluded = {os.path.realpath(str(path)) for path in exclude}
    found = []
    for prefix in (WORK_PREFIX, MNT_PREFIX):
        for match in sorted(glob.glob(os.path.join(base, f"{prefix}*"))):
            if os.path.isdir(match) and os.path.realpath(match) not in excluded:
                found.append(Path(match))
    return found
