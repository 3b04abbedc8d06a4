"""Alternative copy backend that shells out to ``dd``.

dd's ``status=progress`` output is treated as an external event source: the
stderr pipe is polled with ``select`` and every status line is turned into a
ProgressSample. dd separates its live updates with carriage returns, so the
stream is split on both ``\\r`` and ``\\n``.

The parser is strict, because a hung or confused dd must never leave the
operator staring at a frozen bar:
    - "<N> bytes ..." lines are progress (only strictly increasing counts
      are emitted)
    - "<a>+<b> records in/out" lines and blank lines are ignored
    - "dd: ..." lines are error messages, reported if dd exits non-zero
    - anything else is malformed output -> WriteError
    - no status line within ``progress_timeout`` seconds -> WriteError,
      except once every byte is reported: dd is then inside its final
      fsync, which prints nothing, and only its exit status is awaited

Cancellation sends SIGINT, which dd handles between reads and writes.
"""

from __future__ import annotations

import os
import re
import select
import shutil
import signal
import subprocess
import threading
import time
from typing import Callable, Iterator, Optional

from burnengine.config import settings
from burnengine.domain.models import ProgressSample, WriteJob
from burnengine.logging import LoggerFactory

from .exceptions import WriteError


BYTES_PATTERN = re.compile(r"^(\d+)\s+bytes\b")
RECORDS_PATTERN = re.compile(r"^\d+\+\d+\s+records\s+(?:in|out)$")
POLL_INTERVAL = 0.5


def parse_dd_line(line: str) -> tuple[str, int | str | None]:
    """Classify one dd stderr line.

    Returns one of ("progress", bytes), ("ignore", None), ("error", message)
    or ("malformed", line).
    """
    stripped = line.strip()
    if not stripped:
        return "ignore", None
    match = BYTES_PATTERN.match(stripped)
    if match:
        return "progress", int(match.group(1))
    if RECORDS_PATTERN.match(stripped):
        return "ignore", None
    if stripped.startswith("dd:"):
        return "error", stripped
    return "malformed", stripped


class DdCopyEngine:
    """Copy backend driving ``dd if=<image> of=<device> status=progress``.

    Args:
        block_size: dd ``bs`` in bytes
        progress_timeout: Seconds allowed between two status lines
        dd_path: dd binary; looked up on PATH when omitted
        clock: Monotonic clock for elapsed time and timeouts
    """

    def __init__(
        self,
        block_size: Optional[int] = None,
        progress_timeout: Optional[float] = None,
        dd_path: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.block_size = block_size or settings.get_int("block_size", settings.DEFAULT_BLOCK_SIZE)
        if progress_timeout is None:
            progress_timeout = settings.get_float(
                "dd_progress_timeout_seconds", settings.DEFAULT_DD_PROGRESS_TIMEOUT_SECONDS
            )
        self.progress_timeout = progress_timeout
        self.dd_path = dd_path
        self._clock = clock

    def build_command(self, job: WriteJob) -> list[str]:
        dd_path = self.dd_path or shutil.which("dd")
        if not dd_path:
            raise WriteError("dd not found", 0, job.target_device.identifier, target_touched=False)
        return [
            dd_path,
            f"if={job.source_image_path}",
            f"of={job.target_device.identifier}",
            f"bs={self.block_size}",
            "iflag=fullblock",
            "conv=fsync",
            "status=progress",
        ]

    def execute(
        self,
        job: WriteJob,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[ProgressSample]:
        """Run dd and yield samples parsed from its status output.

        Raises:
            WriteError: dd failed, went silent, or printed unparsable output
        """
        log = LoggerFactory.for_write(job.job_id)
        device_path = job.target_device.identifier
        total = job.total_bytes
        command = self.build_command(job)
        log.debug(f"Running command: {' '.join(command)}")

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env={**os.environ, "LC_ALL": "C"},
            )
        except OSError as error:
            raise WriteError(
                f"cannot start dd: {error}", 0, device_path, target_touched=False
            ) from error

        start = self._clock()
        last_signal = start
        last_bytes = 0
        pending = ""
        error_lines: list[str] = []
        cancelled = False
        flushing = False

        def handle(line: str) -> ProgressSample | None:
            nonlocal last_bytes
            kind, value = parse_dd_line(line)
            if kind == "progress":
                count = min(int(value), total)
                if count > last_bytes:
                    last_bytes = count
                    job.bytes_written = count
                    return ProgressSample(count, self._clock() - start, total)
            elif kind == "error":
                log.debug(f"stderr: {value}")
                error_lines.append(str(value))
            elif kind == "malformed":
                raise WriteError(f"unrecognised dd output: {value!r}", last_bytes, device_path)
            return None

        try:
            stderr_fd = process.stderr.fileno()
            while True:
                if cancel_event is not None and cancel_event.is_set() and not cancelled:
                    log.warning(f"Cancellation requested, interrupting dd after {last_bytes} bytes")
                    process.send_signal(signal.SIGINT)
                    cancelled = True
                ready, _, _ = select.select([stderr_fd], [], [], POLL_INTERVAL)
                now = self._clock()
                if ready:
                    data = os.read(stderr_fd, 4096)
                    if not data:
                        break
                    pending += data.decode("utf-8", errors="replace")
                    *lines, pending = re.split(r"[\r\n]", pending)
                    for line in lines:
                        last_signal = now
                        sample = handle(line)
                        if sample is not None:
                            yield sample
                    if last_bytes >= total and not flushing:
                        flushing = True
                        log.info(f"All {total} bytes handed to dd, waiting for the final flush")
                elif not (cancelled or flushing) and now - last_signal > self.progress_timeout:
                    raise WriteError(
                        f"no progress from dd for {self.progress_timeout:g}s",
                        last_bytes,
                        device_path,
                    )
            if pending:
                sample = handle(pending)
                if sample is not None:
                    yield sample
            returncode = process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
            process.stderr.close()

        if cancelled:
            return
        if returncode != 0:
            message = error_lines[-1] if error_lines else f"dd exited with {returncode}"
            raise WriteError(message, last_bytes, device_path)
        if last_bytes < total:
            raise WriteError(
                f"dd reported {last_bytes} of {total} bytes", last_bytes, device_path
            )
