"""Archive formats: output naming, compress/decompress commands, sniffing."""

from __future__ import annotations

import os
import tarfile
import time
from pathlib import Path
from typing import IO, Optional, Union

from ddarch.domain import ArchiveType
from ddarch.logging import LoggerFactory

from .command_runners import require_tool, run_checked_command
from .exceptions import ArchiveWriteError, UsageError

log = LoggerFactory.for_storage()

IMAGE_SUFFIX = ".img"

# Longest suffixes first so ".tar.gz" wins over ".gz"
_RESTORE_SUFFIXES: tuple[tuple[str, str], ...] = (
    (".tar.gz", "tgz"),
    (".tgz", "tgz"),
    (".tar", "tar"),
    (".7z", "7z"),
    (".zip", "zip"),
    (".gz", "gzip"),
)


def parse_archive_type(value: str) -> ArchiveType:
    try:
        return ArchiveType(str(value).strip().lower())
    except ValueError as error:
        choices = ", ".join(kind.value for kind in ArchiveType)
        raise UsageError(f"Unknown archive type '{value}' (choose from {choices})") from error


def output_name(base: str, arch_type: ArchiveType) -> str:
    return f"{base}{IMAGE_SUFFIX}{arch_type.suffix}"


def detect_archive_type(path: Union[str, Path]) -> Optional[str]:
    """Sniff the archive format from the file extension.

    Returns "7z", "zip", "tgz", "tar", "gzip", or None for a raw image.
    """
    name = str(path).lower()
    for suffix, kind in _RESTORE_SUFFIXES:
        if name.endswith(suffix):
            return kind
    return None


def seven_zip() -> str:
    return require_tool("7z", "7za", "7zz")


def compress_file(
    source: Union[str, Path], output: Union[str, Path], arch_type: ArchiveType
) -> Path:
    """Pack a single image file into ``output``.

    The archive holds one entry named after the source file.

    Raises:
        UsageError: For ArchiveType.NONE
        ExternalToolFailure: If the archiver fails
    """
    source = Path(source)
    output = Path(output)
    if arch_type == ArchiveType.SEVEN_ZIP:
        command = [seven_zip(), "a", "-y", "-bd", str(output), str(source)]
    elif arch_type == ArchiveType.ZIP:
        command = [require_tool("zip"), "-j", str(output), str(source)]
    elif arch_type == ArchiveType.TGZ:
        command = [
            require_tool("tar"), "-czf", str(output), "-C", str(source.parent), source.name
        ]
    elif arch_type == ArchiveType.TAR:
        command = [
            require_tool("tar"), "-cf", str(output), "-C", str(source.parent), source.name
        ]
    else:
        raise UsageError(f"Archive type '{arch_type.value}' does not compress")
    log.info(f"Compressing {source} into {output} ({arch_type.value})")
    run_checked_command(command)
    return output


def stream_compress_command(output: Union[str, Path], entry_name: str, arch_type: ArchiveType) -> list[str]:
    """Archiver reading the image from stdin.

    Raises:
        UsageError: For formats that need a file on disk
    """
    if arch_type == ArchiveType.SEVEN_ZIP:
        return [seven_zip(), "a", "-y", "-bd", f"-si{entry_name}", str(output)]
    if arch_type == ArchiveType.ZIP:
        # zip names a stdin entry "-"; unzip -p restores it the same way
        return [require_tool("zip"), "-q", str(output), "-"]
    raise UsageError(
        f"Archive type '{arch_type.value}' has no archiver reading stdin"
    )


def write_tar_stream(
    source: IO[bytes],
    output: Union[str, Path],
    entry_name: str,
    size: int,
    arch_type: ArchiveType,
) -> None:
    """Write exactly ``size`` bytes of ``source`` as the single entry of a tar.

    GNU tar cannot archive stdin, but a tar member only needs its length up
    front, which the bounded dd stream provides.

    Raises:
        UsageError: For formats that are not tar based
        ArchiveWriteError: If the stream ends early or the output cannot be written
    """
    if not arch_type.tar_based:
        raise UsageError(f"Archive type '{arch_type.value}' is not a tar archive")
    info = tarfile.TarInfo(entry_name)
    info.size = size
    info.mode = 0o644
    info.mtime = int(time.time())
    mode = "w:gz" if arch_type == ArchiveType.TGZ else "w"
    log.info(f"Writing {size} bytes into {output} ({arch_type.value})")
    try:
        with tarfile.open(str(output), mode) as tar:
            tar.addfile(info, fileobj=source)
    except (OSError, tarfile.TarError) as error:
        raise ArchiveWriteError(str(output), str(error)) from error


def decompress_command(path: Union[str, Path]) -> Optional[list[str]]:
    """Command writing the decompressed image of ``path`` to stdout.

    Returns None for raw images, which are read directly.
    """
    kind = detect_archive_type(path)
    path = str(path)
    if kind == "7z":
        return [seven_zip(), "e", "-so", path]
    if kind == "zip":
        return [require_tool("unzip"), "-p", path]
    if kind == "tgz":
        return [require_tool("tar"), "-xzOf", path]
    if kind == "tar":
        return [require_tool("tar"), "-xOf", path]
    if kind == "gzip":
        return [require_tool("pigz", "gzip"), "-dc", path]
    return None


def remove_if_exists(path: Union[str, Path]) -> None:
    if os.path.lexists(path):
        os.remove(path)
