"""External tool execution with verbose echo and dd progress tracking."""

from __future__ import annotations

import re
import shlex
import shutil
import signal
import subprocess
import tempfile
from typing import IO, Callable, Optional, Sequence

from ddarch.logging import VERBOSE, LoggerFactory, ThrottledLogger

from .exceptions import ExternalToolFailure

log = LoggerFactory.for_storage()

_BYTES_RE = re.compile(r"^(\d+)\s+bytes")
_RATE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([kMG]?B/s)")


def format_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in command)


def require_tool(name: str, *alternatives: str) -> str:
    """Resolve a binary on PATH, trying alternatives in order.

    Raises:
        ExternalToolFailure: If none of the names can be found
    """
    for candidate in (name, *alternatives):
        path = shutil.which(candidate)
        if path:
            return path
    raise ExternalToolFailure([name], returncode=127, output=f"{name} not found")


def _failure_message(stdout: Optional[str], stderr: Optional[str]) -> str:
    stderr = (stderr or "").strip()
    stdout = (stdout or "").strip()
    return stderr or stdout or "Command failed"


def run_command(
    command: Sequence[str], input_text: Optional[str] = None
) -> subprocess.CompletedProcess:
    """Run a command and return the result whatever the exit code."""
    command = [str(part) for part in command]
    log.log(VERBOSE, f"Running command: {format_command(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    if result.stdout:
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr:
        log.debug(f"stderr: {result.stderr.strip()}")
    if result.returncode != 0:
        log.debug(f"Command exited with code {result.returncode}")
    return result


def run_checked_command(
    command: Sequence[str], input_text: Optional[str] = None
) -> str:
    """Run a command and raise ExternalToolFailure if it fails."""
    result = run_command(command, input_text=input_text)
    if result.returncode != 0:
        raise ExternalToolFailure(
            command,
            returncode=result.returncode,
            output=_failure_message(result.stdout, result.stderr),
        )
    return result.stdout


def parse_dd_progress(line: str) -> Optional[tuple[int, Optional[str]]]:
    """Parse a ``dd status=progress`` line into (bytes, rate)."""
    match = _BYTES_RE.match(line.strip())
    if not match:
        return None
    rate_match = _RATE_RE.search(line)
    rate = f"{rate_match.group(1)} {rate_match.group(2)}" if rate_match else None
    return int(match.group(1)), rate


def _track_progress(
    stream: IO[str], title: str, total_bytes: Optional[int]
) -> list[str]:
    throttled = ThrottledLogger(log, interval_seconds=5.0)
    lines: list[str] = []
    buffer = ""
    # dd redraws its progress line with carriage returns
    while True:
        chunk = stream.read(256)
        if not chunk:
            break
        buffer += chunk
        parts = re.split(r"[\r\n]", buffer)
        buffer = parts.pop()
        for part in parts:
            if not part.strip():
                continue
            lines.append(part)
            progress = parse_dd_progress(part)
            if progress is None:
                continue
            copied, rate = progress
            message = f"{title}: {copied} bytes"
            if total_bytes:
                message += f" ({copied / total_bytes * 100:.1f}%)"
            if rate:
                message += f", {rate}"
            throttled.info(title, message)
    if buffer.strip():
        lines.append(buffer)
    return lines


def run_checked_with_streaming_progress(
    command: Sequence[str],
    *,
    title: str = "Copying",
    total_bytes: Optional[int] = None,
    stdin_source: Optional[IO] = None,
) -> subprocess.CompletedProcess:
    """Run a dd-style command, logging its progress output as it arrives."""
    command = [str(part) for part in command]
    log.log(VERBOSE, f"Running command: {format_command(command)}")
    process = subprocess.Popen(
        command,
        stdin=stdin_source,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    stderr_lines = _track_progress(process.stderr, title, total_bytes)
    stdout_data = ""
    if process.stdout:
        stdout_data = process.stdout.read()
    process.wait()
    stderr_output = "\n".join(stderr_lines)
    if process.returncode != 0:
        raise ExternalToolFailure(
            command,
            returncode=process.returncode,
            output=_failure_message(stdout_data, stderr_output),
        )
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )


def run_pipeline(
    producer: Sequence[str],
    consumer: Sequence[str],
    *,
    title: str = "Streaming",
    total_bytes: Optional[int] = None,
    consumer_progress: bool = False,
) -> None:
    """Pipe ``producer`` stdout into ``consumer`` stdin; both must succeed.

    Progress is read from the stderr of whichever side runs dd.
    """
    producer = [str(part) for part in producer]
    consumer = [str(part) for part in consumer]
    log.log(
        VERBOSE,
        f"Running pipeline: {format_command(producer)} | {format_command(consumer)}",
    )
    producer_proc = subprocess.Popen(
        producer,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL if consumer_progress else subprocess.PIPE,
        text=False,
    )
    error: Optional[Exception] = None
    try:
        if consumer_progress:
            run_checked_with_streaming_progress(
                consumer,
                title=title,
                total_bytes=total_bytes,
                stdin_source=producer_proc.stdout,
            )
        else:
            # consumer stderr goes to a file; only the producer pipe is read here
            with tempfile.TemporaryFile() as consumer_err:
                consumer_proc = subprocess.Popen(
                    consumer,
                    stdin=producer_proc.stdout,
                    stdout=subprocess.DEVNULL,
                    stderr=consumer_err,
                )
                # Allow the producer to receive SIGPIPE if the consumer exits
                producer_proc.stdout.close()
                if producer_proc.stderr is not None:
                    stderr_text = producer_proc.stderr.read().decode("utf-8", "replace")
                    _log_progress_output(stderr_text, title, total_bytes)
                consumer_proc.wait()
                consumer_err.seek(0)
                consumer_text = consumer_err.read().decode("utf-8", "replace")
            if consumer_proc.returncode != 0:
                raise ExternalToolFailure(
                    consumer,
                    returncode=consumer_proc.returncode,
                    output=_failure_message(None, consumer_text),
                )
    except Exception as exc:
        error = exc
    finally:
        if producer_proc.stdout and not producer_proc.stdout.closed:
            producer_proc.stdout.close()
        producer_proc.wait()
    if error is not None:
        raise error
    if producer_proc.returncode != 0:
        raise ExternalToolFailure(
            producer,
            returncode=producer_proc.returncode,
            output=f"exited with code {producer_proc.returncode}",
        )


def run_into_sink(
    producer: Sequence[str],
    sink: Callable[[IO[bytes]], None],
    *,
    title: str = "Streaming",
    total_bytes: Optional[int] = None,
) -> None:
    """Feed ``producer`` stdout to ``sink`` in this process; both must succeed.

    When the producer fails, its failure is reported even if the sink
    raised first on the cut-short stream.
    """
    producer = [str(part) for part in producer]
    log.log(VERBOSE, f"Running command: {format_command(producer)}")
    error: Optional[Exception] = None
    with tempfile.TemporaryFile() as producer_err:
        process = subprocess.Popen(producer, stdout=subprocess.PIPE, stderr=producer_err)
        try:
            sink(process.stdout)
        except Exception as exc:
            error = exc
        finally:
            process.stdout.close()
            process.wait()
        producer_err.seek(0)
        stderr_text = producer_err.read().decode("utf-8", "replace")
    _log_progress_output(stderr_text, title, total_bytes)
    # a producer killed by SIGPIPE only lost its reader
    if process.returncode not in (0, -signal.SIGPIPE):
        raise ExternalToolFailure(
            producer,
            returncode=process.returncode,
            output=_failure_message(None, stderr_text),
        ) from error
    if error is not None:
        raise error
    if process.returncode != 0:
        raise ExternalToolFailure(
            producer, returncode=process.returncode, output="output was not fully read"
        )


def _log_progress_output(text: str, title: str, total_bytes: Optional[int]) -> None:
    last = None
    for part in re.split(r"[\r\n]", text):
        progress = parse_dd_progress(part)
        if progress is not None:
            last = progress
    if last is None:
        return
    copied, rate = last
    message = f"{title}: {copied} bytes"
    if total_bytes:
        message += f" ({copied / total_bytes * 100:.1f}%)"
    if rate:
        message += f", {rate}"
    log.info(message)


__all__ = [
    "format_command",
    "parse_dd_progress",
    "require_tool",
    "run_command",
    "run_checked_command",
    "run_checked_with_streaming_progress",
    "run_into_sink",
    "run_pipeline",
]
