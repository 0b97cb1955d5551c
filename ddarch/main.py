"""Command line entry point.

    ddarch [global options] [archive|restore] [command options]

The command defaults to ``archive``. Flags override the settings file,
which overrides the built-in defaults.
"""

from __future__ import annotations

import argparse
import os
import shlex
import sys
from datetime import date
from typing import List, Optional, Sequence

from ddarch.__version__ import __version__
from ddarch.app import orchestrator
from ddarch.app.context import OperationContext
from ddarch.config import settings
from ddarch.domain import ArchiveOptions, ArchiveType, RestoreOptions
from ddarch.logging import LoggerFactory, setup_logging
from ddarch.storage.compression import output_name, parse_archive_type
from ddarch.storage.exceptions import DdarchError, UnknownOptionError, UsageError

log = LoggerFactory.for_system()

COMMANDS = ("archive", "restore")
DEFAULT_NAME = "image"

GLOBAL_FLAGS = (
    "-h", "--help", "-v", "--verbose", "-q", "--quiet", "-y", "--yes", "--debug", "--version",
)
GLOBAL_VALUE_FLAGS = ("--work-dir",)


class ArgumentParser(argparse.ArgumentParser):
    """argparse that raises instead of printing usage and exiting."""

    def error(self, message):
        raise UsageError(message)


def _byte_count(value: str) -> int:
    try:
        count = int(value)
    except ValueError as error:
        raise argparse.ArgumentTypeError(f"not a byte count: {value}") from error
    if count < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return count


def build_global_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="ddarch",
        description="Archive disk images and devices compactly, restore them to any size.",
        allow_abbrev=False,
        add_help=False,
    )
    parser.add_argument("-h", "--help", action="store_true", help="Show help and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every external command")
    parser.add_argument("-q", "--quiet", action="store_true", help="No console output")
    parser.add_argument("-y", "--yes", action="store_true", help="Answer yes to every question")
    parser.add_argument("--work-dir", help="Working directory for temporary images")
    parser.add_argument("--debug", action="store_true", help="Debug output and debug.log")
    parser.add_argument("--version", action="store_true", help="Print the version and exit")
    return parser


def build_archive_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="ddarch archive", allow_abbrev=False)
    parser.add_argument("-i", "--input", required=True, help="Image file or block device")
    parser.add_argument("-o", "--output", help="Output file (default: <date>-<name>.img<suffix>)")
    parser.add_argument("--dd-args", default="", help="Extra arguments passed to dd")
    parser.add_argument(
        "--arch-type",
        choices=[kind.value for kind in ArchiveType],
        default=None,
        help="Archive format (default: 7z)",
    )
    parser.add_argument("--name", default=None, help="Image name used in the output")
    parser.add_argument("--resizepart-tail", type=_byte_count, default=None,
                        help="Bytes kept after the shrunk filesystem")
    parser.add_argument("--truncate-tail", type=_byte_count, default=None,
                        help="Bytes kept after the last partition when truncating")
    parser.add_argument("--skip-unpartitioned", action="store_true",
                        help="Do not copy space after the last partition")
    parser.add_argument("--no-resizepart", action="store_true", help="Do not shrink")
    parser.add_argument("--no-truncate", action="store_true", help="Do not truncate")
    parser.add_argument("--no-zero", action="store_true", help="Do not zero free space")
    parser.add_argument("--no-space-check", action="store_true", help="Skip the disk space check")
    parser.add_argument("--in-place", action="store_true", help="Modify the input instead of a copy")
    parser.add_argument("--mnt-dir", help="Mount directory for zero filling")
    return parser


def build_restore_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="ddarch restore", allow_abbrev=False)
    parser.add_argument("-i", "--input", required=True, help="Archive or raw image")
    parser.add_argument("-o", "--output", required=True, help="Target block device")
    parser.add_argument("--dd-args", default="", help="Extra arguments passed to dd")
    parser.add_argument("--no-extend", action="store_true", help="Do not grow the last partition")
    parser.add_argument("--verify", action="store_true", help="Check filesystems after writing")
    return parser


def _parse_strict(parser: ArgumentParser, argv: Sequence[str]) -> argparse.Namespace:
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        raise UnknownOptionError(unknown[0])
    return args


def split_command(argv: Sequence[str]):
    """Split argv into (global args, command, command args)."""
    argv = list(argv)
    position = 0
    while position < len(argv):
        arg = argv[position]
        if arg in GLOBAL_VALUE_FLAGS:
            position += 2
        elif arg in GLOBAL_FLAGS or arg.startswith("--work-dir="):
            position += 1
        else:
            break
    if position < len(argv):
        token = argv[position]
        if token in COMMANDS:
            return argv[:position], token, argv[position + 1:]
        if not token.startswith("-"):
            raise UsageError(f"Unknown command: {token}")
    return argv[:position], "archive", argv[position:]


def default_output(name: str, arch_type: ArchiveType, today: Optional[date] = None) -> str:
    today = today or date.today()
    base = f"{today.isoformat()}-{name}"
    return os.path.join(os.getcwd(), output_name(base, arch_type))


def archive_options(args: argparse.Namespace) -> ArchiveOptions:
    arch_type = parse_archive_type(
        args.arch_type or settings.get_setting("arch_type", ArchiveType.SEVEN_ZIP.value)
    )
    name = args.name or DEFAULT_NAME
    resizepart_tail = args.resizepart_tail
    if resizepart_tail is None:
        resizepart_tail = settings.get_int("resizepart_tail", settings.DEFAULT_RESIZEPART_TAIL)
    truncate_tail = args.truncate_tail
    if truncate_tail is None:
        truncate_tail = settings.get_int("truncate_tail", settings.DEFAULT_TRUNCATE_TAIL)
    return ArchiveOptions(
        input_path=args.input,
        output_path=args.output or default_output(name, arch_type),
        arch_type=arch_type,
        name=name,
        dd_args=tuple(shlex.split(args.dd_args)),
        resizepart_tail=resizepart_tail,
        truncate_tail=truncate_tail,
        skip_unpartitioned=args.skip_unpartitioned,
        resize=not args.no_resizepart,
        truncate=not args.no_truncate,
        zero=not args.no_zero,
        space_check=not args.no_space_check and settings.get_bool("space_check", True),
        in_place=args.in_place,
    )


def restore_options(args: argparse.Namespace) -> RestoreOptions:
    return RestoreOptions(
        input_path=args.input,
        output_path=args.output,
        dd_args=tuple(shlex.split(args.dd_args)),
        extend=not args.no_extend,
        verify=args.verify,
    )


def _print_help() -> None:
    build_global_parser().print_help()
    print()
    build_archive_parser().print_help()
    print()
    build_restore_parser().print_help()


def run(argv: Sequence[str]) -> int:
    global_argv, command, command_argv = split_command(argv)
    global_args = _parse_strict(build_global_parser(), global_argv)
    if global_args.version:
        print(f"ddarch {__version__}")
        return 0
    if global_args.help or "-h" in command_argv or "--help" in command_argv:
        _print_help()
        return 0

    setup_logging(
        verbose=global_args.verbose, quiet=global_args.quiet, debug=global_args.debug
    )
    ctx = OperationContext(assume_yes=global_args.yes)
    work_dir = global_args.work_dir or settings.get_setting("work_dir")

    if command == "restore":
        args = _parse_strict(build_restore_parser(), command_argv)
        orchestrator.run_restore(ctx, restore_options(args), work_dir=work_dir)
        return 0

    args = _parse_strict(build_archive_parser(), command_argv)
    mnt_dir = args.mnt_dir or settings.get_setting("mnt_dir")
    orchestrator.run_archive(ctx, archive_options(args), work_dir=work_dir, mnt_dir=mnt_dir)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    try:
        return run(argv)
    except DdarchError as error:
        log.error(str(error))
        exit_code = error.exit_code
    except KeyboardInterrupt:
        log.error("Interrupted")
        exit_code = 130
    except SystemExit as error:
        if not isinstance(error.code, int) or error.code == 0:
            raise
        log.error(f"Terminated (exit code {error.code})")
        exit_code = error.code
    log.warning("Run again with --verbose or --debug for details")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
