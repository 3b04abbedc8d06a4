from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "BURNENGINE_LOG_DIR",
        Path.home() / ".local" / "state" / "burnengine" / "logs",
    )
)


def _should_log_progress(record) -> bool:
    """Filter per-chunk progress logs - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if "progress" in tags and record["level"].no < logger.level("INFO").no:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _should_log_command(record) -> bool:
    """Filter routine command echo logs (lsblk polling) unless debugging."""
    message = record["message"].lower()

    # Always log warnings and errors
    if record["level"].no >= logger.level("WARNING").no:
        return True

    if message.startswith("running command: lsblk"):
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_progress(record) and _should_log_command(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Write failures, unrecoverable errors
    - SUCCESS/INFO: Job lifecycle, unmounts, state changes
    - DEBUG: Detailed diagnostics, command execution
    - TRACE: Ultra-verbose (every chunk written, lsblk polling)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --verbose is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/burnengine/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <15}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log - Ultra-verbose (TRACE only, when trace=True)
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["write", "storage"])
        source: Source component (e.g., "write", "usb", "mount")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_job_id(operation: str = "write") -> str:
    return f"{operation}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, *, job_id: str | None = None, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "write", "unmount", "verify")
        job_id: Existing job identifier; a fresh one is generated when omitted
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("unmount", device="/dev/sdb") as log:
            log.debug("Reading /proc/mounts")
    """
    job_id = job_id or new_job_id(operation)

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_write(job_id: str | None = None, **details) -> Logger:
        """Logger for image write jobs."""
        if job_id is None:
            job_id = new_job_id("write")
        return logger.bind(
            job_id=job_id, source="write", tags=["write", "storage"], **details
        )

    @staticmethod
    def for_progress(job_id: str | None = None) -> Logger:
        """Logger for per-chunk progress (TRACE-filtered on the console)."""
        return logger.bind(
            job_id=job_id or "-", source="progress", tags=["write", "progress"]
        )

    @staticmethod
    def for_usb() -> Logger:
        """Logger for USB device detection and classification."""
        return logger.bind(source="usb", tags=["usb", "hardware"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mount queries and unmount attempts."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for progress updates, which arrive several times per second.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Keeps write job events consistent in structured.jsonl.
    """

    @staticmethod
    def log_write_started(
        log: Logger, source: str, target: str, total_bytes: int, **extra
    ) -> None:
        """Log image write start."""
        log.info(
            "Image write started",
            event_type="write_started",
            source_image=source,
            target_device=target,
            total_bytes=total_bytes,
            **extra,
        )

    @staticmethod
    def log_write_progress(
        log: Logger, percent: float, bytes_written: int, rate_bytes: float, **extra
    ) -> None:
        """Log write progress update."""
        log.debug(
            "Image write progress",
            event_type="write_progress",
            percent=round(percent, 2),
            bytes_written=bytes_written,
            rate_mbps=round(rate_bytes / (1024 * 1024), 2),
            **extra,
        )

    @staticmethod
    def log_write_finished(
        log: Logger, state: str, bytes_written: int, **extra
    ) -> None:
        """Log terminal state of a write job."""
        level = "SUCCESS" if state == "succeeded" else "WARNING"
        log.log(
            level,
            f"Image write {state}",
            event_type="write_finished",
            state=state,
            bytes_written=bytes_written,
            **extra,
        )
