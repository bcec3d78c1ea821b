"""Command execution utilities with progress tracking and dry-run support."""

from __future__ import annotations

import os
import select
import shutil
import subprocess
import time
from typing import Callable, Iterable, Mapping, Optional, Sequence

from device_repair.logging import LoggerFactory, ThrottledLogger

from .exceptions import CommandError, ToolUnavailableError
from .progress import ProgressUpdate, format_eta, parse_progress_line


log = LoggerFactory.for_storage()
_output_log = log.bind(tags=["storage", "output"])

ProgressCallback = Callable[[ProgressUpdate], None]


def _merged_env(env: Optional[Mapping[str, str]]) -> Optional[dict[str, str]]:
    if not env:
        return None
    return {**os.environ, **env}


def _describe(command: Sequence[str], env: Optional[Mapping[str, str]] = None) -> str:
    prefix = " ".join(f"{key}={value}" for key, value in (env or {}).items())
    joined = " ".join(command)
    return f"{prefix} {joined}" if prefix else joined


def run_checked_command(
    command: Sequence[str],
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> str:
    """Run a command and raise CommandError if it fails."""
    log.debug(f"Running command: {_describe(command, env)}")
    try:
        result = subprocess.run(
            list(command),
            input=input_text,
            text=True,
            capture_output=True,
            env=_merged_env(env),
        )
    except FileNotFoundError as error:
        raise ToolUnavailableError(command[0]) from error
    if result.stdout:
        _output_log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr:
        _output_log.debug(f"stderr: {result.stderr.strip()}")
    if result.returncode != 0:
        stderr = result.stderr.strip() if result.stderr else ""
        stdout = result.stdout.strip() if result.stdout else ""
        raise CommandError(command, result.returncode, stderr or stdout)
    return result.stdout


def run_checked_with_streaming_progress(
    command: Sequence[str],
    total_bytes: Optional[int] = None,
    title: str = "WORKING",
    progress_callback: Optional[ProgressCallback] = None,
    env: Optional[Mapping[str, str]] = None,
) -> subprocess.CompletedProcess:
    """Run a command with streaming progress monitoring and callback support.

    Progress is parsed from stderr (dd ``status=progress`` style lines). Without
    a callback, progress is written to the log at most every few seconds.
    """
    throttled = ThrottledLogger(log, interval_seconds=5.0)

    def emit_progress(update: ProgressUpdate) -> None:
        if progress_callback:
            progress_callback(update)
        else:
            throttled.info(title, update.message)

    log.debug(f"Running command: {_describe(command, env)}")
    try:
        process = subprocess.Popen(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=_merged_env(env),
        )
    except FileNotFoundError as error:
        raise ToolUnavailableError(command[0]) from error

    stderr_lines = []
    last_bytes = None
    last_time = None
    last_rate = None
    last_eta = None
    last_percent = None
    refresh_interval = 1.0
    while True:
        ready, _, _ = select.select([process.stderr], [], [], refresh_interval)
        now = time.time()
        line = None
        if ready:
            line = process.stderr.readline()
        if line:
            stderr_lines.append(line)
            _output_log.trace(f"stderr: {line.strip()}")
            sample = parse_progress_line(line)
            if sample.bytes_copied is not None:
                rate = sample.rate
                if rate is None and last_bytes is not None and last_time is not None:
                    delta_bytes = sample.bytes_copied - last_bytes
                    delta_time = now - last_time
                    if delta_bytes >= 0 and delta_time > 0:
                        rate = delta_bytes / delta_time
                if rate and total_bytes and sample.bytes_copied <= total_bytes:
                    last_eta = format_eta((total_bytes - sample.bytes_copied) / rate)
                last_bytes = sample.bytes_copied
                last_time = now
                last_rate = rate or last_rate
            if sample.percent is not None:
                last_percent = sample.percent
            if not sample.is_empty:
                emit_progress(
                    ProgressUpdate(
                        title=title,
                        bytes_copied=last_bytes,
                        total_bytes=total_bytes,
                        percent=last_percent,
                        rate=last_rate,
                        eta=last_eta,
                    )
                )
        if process.poll() is not None and not line:
            break
    remaining_stderr = process.stderr.read() if process.stderr else ""
    if remaining_stderr:
        stderr_lines.append(remaining_stderr)
    stdout_data = process.stdout.read() if process.stdout else ""
    process.wait()
    stderr_output = "".join(stderr_lines)
    if process.returncode != 0:
        message = stderr_output.strip() or stdout_data.strip()
        raise CommandError(command, process.returncode, message)
    log.debug(f"{title} complete")
    return subprocess.CompletedProcess(
        list(command), process.returncode, stdout=stdout_data, stderr=stderr_output
    )


class CommandRunner:
    """Entry point for every external tool the repair core invokes.

    Mutating commands go through :meth:`run`, :meth:`run_with_progress` or
    :meth:`run_interactive` and are skipped in dry-run mode. Read-only probes
    go through :meth:`query` and always execute so that reported state stays
    truthful during a dry run.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def has_tool(self, tool: str) -> bool:
        if os.path.isabs(tool):
            return os.access(tool, os.X_OK)
        return shutil.which(tool) is not None

    def which(self, tool: str) -> str:
        if os.path.isabs(tool):
            if not os.access(tool, os.X_OK):
                raise ToolUnavailableError(tool)
            return tool
        path = shutil.which(tool)
        if not path:
            raise ToolUnavailableError(tool)
        return path

    def query(self, command: Sequence[str]) -> subprocess.CompletedProcess:
        """Run a read-only command; never raises on a non-zero exit."""
        log.debug(f"Querying: {' '.join(command)}")
        try:
            result = subprocess.run(
                list(command), text=True, capture_output=True, check=False
            )
        except FileNotFoundError as error:
            raise ToolUnavailableError(command[0]) from error
        log.debug(f"Query return code: {result.returncode}")
        if result.stdout:
            _output_log.debug(f"stdout: {result.stdout.strip()}")
        return result

    def run(
        self,
        command: Sequence[str],
        input_text: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> str:
        if self.dry_run:
            log.info(f"[DRYRUN] {_describe(command, env)}")
            return ""
        log.info(f"+ {_describe(command, env)}")
        return run_checked_command(command, input_text=input_text, env=env)

    def run_with_progress(
        self,
        command: Sequence[str],
        total_bytes: Optional[int] = None,
        title: str = "WORKING",
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        if self.dry_run:
            log.info(f"[DRYRUN] {_describe(command)}")
            return
        log.info(f"+ {_describe(command)}")
        run_checked_with_streaming_progress(
            command,
            total_bytes=total_bytes,
            title=title,
            progress_callback=progress_callback,
        )

    def run_interactive(self, command: Sequence[str]) -> int:
        """Run a command attached to the operator's terminal."""
        if self.dry_run:
            log.info(f"[DRYRUN] {_describe(command)}")
            return 0
        log.info(f"+ {_describe(command)}")
        try:
            return subprocess.call(list(command))
        except FileNotFoundError as error:
            raise ToolUnavailableError(command[0]) from error


def require_tools(runner: CommandRunner, tools: Iterable[str]) -> None:
    """Check every tool up front; raise for the first missing one."""
    missing = [tool for tool in tools if not runner.has_tool(tool)]
    for tool in missing:
        log.error(f"Required command not found: {tool}")
    if missing:
        raise ToolUnavailableError(missing[0])


__all__ = [
    "CommandRunner",
    "ProgressCallback",
    "require_tools",
    "run_checked_command",
    "run_checked_with_streaming_progress",
]
