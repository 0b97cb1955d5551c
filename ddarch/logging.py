from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "DDARCH_LOG_DIR",
        Path.home() / ".local" / "state" / "ddarch" / "logs",
    )
)

# Sits between DEBUG (10) and INFO (20); used to echo external tool invocations
VERBOSE = "VERBOSE"
VERBOSE_LEVEL_NO = 15


def _register_verbose_level() -> None:
    try:
        logger.level(VERBOSE)
    except ValueError:
        logger.level(VERBOSE, no=VERBOSE_LEVEL_NO, color="<magenta>")


_register_verbose_level()


def setup_logging(
    *,
    verbose: bool = False,
    quiet: bool = False,
    debug: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup console and (optionally) file logging.

    Logging Tiers:
    - ERROR: the run is going to fail
    - WARNING: skipped steps, lingering directories, tolerated tool failures
    - INFO: pipeline steps
    - VERBOSE: every external tool invocation
    - DEBUG: tool output, geometry details

    Args:
        verbose: Echo external tool invocations on the console
        quiet: Suppress all console output
        debug: Enable DEBUG level and the debug.log file sink
        log_dir: Custom log directory (defaults to ~/.local/state/ddarch/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "ddarch"})

    if debug:
        console_level = "DEBUG"
    elif verbose:
        console_level = VERBOSE
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    if not quiet:
        logger.add(
            sys.stderr,
            level=console_level,
            backtrace=False,
            diagnose=False,
            colorize=None,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "{message}"
            ),
        )

    # SINK 2: Debug Log - Detailed diagnostics, only with --debug
    if debug:
        log_dir = log_dir or DEFAULT_LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <17} | "
                "{message}"
            ),
        )

    return logger


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for long-running operations with automatic timing.

    Logs operation start, completion and failure with duration.

    Example:
        with operation_context("archive", input="/dev/sdb") as log:
            log.info("Shrinking last partition")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed in {round(duration, 2)}s"
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed after {round(duration, 2)}s: "
                f"{type(e).__name__}: {e}"
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.
    """

    @staticmethod
    def for_archive(job_id: str | None = None) -> Logger:
        """Logger for the archive pipeline."""
        if job_id is None:
            job_id = f"archive-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="archive", tags=["archive"])

    @staticmethod
    def for_restore(job_id: str | None = None) -> Logger:
        """Logger for the restore pipeline."""
        if job_id is None:
            job_id = f"restore-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="restore", tags=["restore"])

    @staticmethod
    def for_resize() -> Logger:
        """Logger for partition and filesystem resizing."""
        return logger.bind(source="resize", tags=["resize", "storage"])

    @staticmethod
    def for_storage() -> Logger:
        """Logger for geometry, loop devices, mounts and tool invocations."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, cleanup and configuration."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for dd progress lines, which arrive several times per second.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str) -> None:
        self._throttled_log("DEBUG", key, message)

    def info(self, key: str, message: str) -> None:
        self._throttled_log("INFO", key, message)

    def _throttled_log(self, level: str, key: str, message: str) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message)
            self.last_log_time[key] = now
