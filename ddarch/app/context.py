from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional


@dataclass
class OperationContext:
    """State shared by every step of one archive or restore run.

    ``loop_device`` is the single loop binding handle: it is overwritten at
    each bind and released by the top-level cleanup whatever happened.
    """

    assume_yes: bool = False
    work_dir: Optional[Path] = None
    mnt_dir: Optional[Path] = None
    loop_device: Optional[str] = None
    mounted_at: Optional[str] = None
    prompt: Callable[[str], str] = input
    temp_files: List[Path] = field(default_factory=list)

    def confirm(self, question: str) -> bool:
        if self.assume_yes:
            return True
        try:
            answer = self.prompt(f"{question} [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")
