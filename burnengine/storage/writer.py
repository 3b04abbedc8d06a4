"""In-process block copy of an image onto a raw device.

The copy runs in fixed-size chunks (``block_size``, 4 MiB by default): large
enough that per-chunk overhead does not dominate, small enough that a sample
arrives well under a second apart at USB 2.0 speeds.

Algorithm:
    - open the image read-only and the device O_WRONLY | O_EXCL
    - per chunk: check for cancellation, read, write fully, fsync once every
      ``flush_interval_bytes``, emit a ProgressSample
    - the last chunk writes only the remaining bytes; nothing beyond
      ``total_bytes`` is ever written
    - fsync before returning, so a finished generator means "durably written"

Any OSError is fatal: it is raised as WriteError and never retried, leaving
the device partially written. Cancellation is only observed between chunks,
so a chunk is either fully handed to the device or not started.
"""

from __future__ import annotations

import os
import threading
import time
from typing import BinaryIO, Callable, Iterator, Optional, Protocol

from burnengine.config import settings
from burnengine.domain.models import ProgressSample, WriteJob
from burnengine.logging import LoggerFactory

from .exceptions import WriteError


class TargetHandle(Protocol):
    def write(self, data: memoryview) -> int: ...

    def flush(self) -> None: ...

    def close(self) -> None: ...


class RawDeviceHandle:
    """Unbuffered file descriptor on a device node."""

    def __init__(self, fd: int) -> None:
        self.fd = fd

    def write(self, data: memoryview) -> int:
        return os.write(self.fd, data)

    def flush(self) -> None:
        os.fsync(self.fd)

    def close(self) -> None:
        os.close(self.fd)


def open_raw_target(device_path: str) -> RawDeviceHandle:
    """Open a device node for exclusive raw writing."""
    return RawDeviceHandle(os.open(device_path, os.O_WRONLY | os.O_EXCL | os.O_CLOEXEC))


def open_source(image_path) -> BinaryIO:
    return open(image_path, "rb", buffering=0)


class CopyEngine:
    """Chunked image-to-device copier.

    Args:
        block_size: Bytes per chunk
        flush_interval_bytes: fsync after at least this many unflushed bytes
        target_opener: Opens the device node and returns a TargetHandle
        source_opener: Opens the image for binary reading
        clock: Monotonic clock for elapsed time
    """

    def __init__(
        self,
        block_size: Optional[int] = None,
        flush_interval_bytes: Optional[int] = None,
        target_opener: Callable[[str], TargetHandle] = open_raw_target,
        source_opener: Callable[[object], BinaryIO] = open_source,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.block_size = block_size or settings.get_int("block_size", settings.DEFAULT_BLOCK_SIZE)
        if self.block_size <= 0:
            raise ValueError(f"block_size must be positive, got {self.block_size}")
        self.flush_interval_bytes = flush_interval_bytes or settings.get_int(
            "flush_interval_bytes", settings.DEFAULT_FLUSH_INTERVAL_BYTES
        )
        self._open_target = target_opener
        self._open_source = source_opener
        self._clock = clock

    @staticmethod
    def _read_chunk(source: BinaryIO, size: int) -> bytes:
        buffer = bytearray()
        while len(buffer) < size:
            piece = source.read(size - len(buffer))
            if not piece:
                break
            buffer.extend(piece)
        return bytes(buffer)

    @staticmethod
    def _write_all(target: TargetHandle, chunk: bytes) -> None:
        view = memoryview(chunk)
        while view:
            count = target.write(view)
            if not count:
                raise OSError("device accepted no data")
            view = view[count:]

    def execute(
        self,
        job: WriteJob,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[ProgressSample]:
        """Copy ``job.source_image_path`` onto ``job.target_device``.

        Yields one ProgressSample per chunk, in increasing byte order. Returns
        early (after flushing) when ``cancel_event`` is set.

        Raises:
            WriteError: On any read, write or flush failure
        """
        log = LoggerFactory.for_write(job.job_id)
        device_path = job.target_device.identifier
        total = job.total_bytes
        written = 0

        try:
            source = self._open_source(job.source_image_path)
        except OSError as error:
            raise WriteError(
                f"cannot open image: {error}", 0, device_path, target_touched=False
            ) from error
        try:
            try:
                target = self._open_target(device_path)
            except OSError as error:
                raise WriteError(
                    f"cannot open {device_path} for writing: {error}",
                    0,
                    device_path,
                    target_touched=False,
                ) from error
            try:
                log.debug(
                    f"Copying {total} bytes to {device_path} "
                    f"(block size {self.block_size}, flush every {self.flush_interval_bytes})"
                )
                start = self._clock()
                unflushed = 0
                while written < total:
                    if cancel_event is not None and cancel_event.is_set():
                        log.warning(f"Cancellation observed after {written} bytes")
                        target.flush()
                        return
                    want = min(self.block_size, total - written)
                    chunk = self._read_chunk(source, want)
                    if len(chunk) < want:
                        raise WriteError(
                            f"image ended early at {written + len(chunk)} of {total} bytes",
                            written,
                            device_path,
                            target_touched=written > 0,
                        )
                    self._write_all(target, chunk)
                    written += want
                    unflushed += want
                    job.bytes_written = written
                    if unflushed >= self.flush_interval_bytes:
                        target.flush()
                        unflushed = 0
                    log.trace(f"Wrote chunk, {written}/{total} bytes")
                    yield ProgressSample(written, self._clock() - start, total)
                target.flush()
                log.debug(f"Flushed {written} bytes to {device_path}")
            finally:
                target.close()
        except OSError as error:
            raise WriteError(str(error), written, device_path) from error
        finally:
            source.close()
