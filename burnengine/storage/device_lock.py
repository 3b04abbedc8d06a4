"""Exclusive access tokens for write jobs.

Two locks protect a write:

JobSlot
    Only one write job may be active at a time. ``BurnService.begin_job``
    acquires the slot and it is released when the job reaches a terminal
    state. A second acquire fails immediately with JobActiveError instead of
    queuing.

DeviceLock
    An exclusive, non-blocking ``flock`` on the target device node, taken
    before the unmount step and held until the job ends. udev and systemd
    treat a BSD lock on a whole-disk node as "this disk is being written" and
    stop probing or auto-mounting its partitions meanwhile.

Usage:
    slot = JobSlot()
    token = slot.acquire(job.job_id)
    try:
        with DeviceLock("/dev/sdb"):
            ...
    finally:
        slot.release(token)
"""

from __future__ import annotations

import fcntl
import os
import threading
from dataclasses import dataclass

from burnengine.logging import LoggerFactory

from .exceptions import DeviceBusyError, JobActiveError


log = LoggerFactory.for_write(job_id="-")


@dataclass(frozen=True)
class JobToken:
    job_id: str


class JobSlot:
    """Single-holder token for the active write job."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holder: JobToken | None = None

    def acquire(self, job_id: str) -> JobToken:
        """Take the slot for ``job_id``.

        Raises:
            JobActiveError: If another job holds the slot
        """
        with self._lock:
            if self._holder is not None:
                raise JobActiveError(self._holder.job_id)
            self._holder = JobToken(job_id)
            log.debug(f"Job slot acquired by {job_id}")
            return self._holder

    def release(self, token: JobToken) -> bool:
        """Release the slot; returns False if ``token`` no longer holds it."""
        with self._lock:
            if self._holder != token:
                return False
            self._holder = None
            log.debug(f"Job slot released by {token.job_id}")
            return True

    def is_active(self) -> bool:
        with self._lock:
            return self._holder is not None

    @property
    def active_job_id(self) -> str | None:
        with self._lock:
            return self._holder.job_id if self._holder else None


class DeviceLock:
    """Exclusive advisory lock on a device node (context manager)."""

    def __init__(self, device_path: str) -> None:
        self.device_path = device_path
        self._fd: int | None = None

    def acquire(self) -> None:
        """Raises DeviceBusyError if the node cannot be opened or locked."""
        try:
            fd = os.open(self.device_path, os.O_RDONLY | os.O_CLOEXEC)
        except OSError as error:
            raise DeviceBusyError(self.device_path, reason=f"cannot open: {error.strerror}") from error
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as error:
            os.close(fd)
            raise DeviceBusyError(self.device_path, reason="locked by another process") from error
        self._fd = fd
        log.debug(f"Exclusive lock taken on {self.device_path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
            log.debug(f"Exclusive lock released on {self.device_path}")

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> DeviceLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
