"""Write orchestration: the operations a CLI or UI shell drives.

Typical flow::

    service = BurnService()
    devices = service.list_candidate_devices()
    job = service.begin_job("ubuntu.iso", "/dev/sdb")
    service.confirm_step(job, Acknowledgment.first())
    service.confirm_step(job, Acknowledgment.final(job.gate.expected_echo))
    handle = service.run(job)
    for snapshot in handle.progress():
        render(snapshot)
    result = handle.result()

``begin_job`` validates everything that can be checked without side effects
(image readable, device present, removable USB, large enough) and takes the
single job slot. ``run`` hands the job to a worker thread which re-validates
the live device, locks the node, unmounts, copies and optionally verifies.
From the unmount step on, failures are captured in the WriteResult together
with the condition the device was left in, rather than raised.
"""

from __future__ import annotations

import os
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

from burnengine.config import settings
from burnengine.domain.models import (
    BlockDevice,
    DeviceCondition,
    JobState,
    ProgressSample,
    ProgressSnapshot,
    WriteJob,
    WriteResult,
)
from burnengine.logging import (
    EventLogger,
    LoggerFactory,
    ThrottledLogger,
    new_job_id,
    operation_context,
)
from burnengine.storage.dd import DdCopyEngine
from burnengine.storage.device_lock import DeviceLock, JobSlot, JobToken
from burnengine.storage.devices import DeviceCatalog
from burnengine.storage.exceptions import (
    BurnError,
    DeviceBusyError,
    DeviceNotEligibleError,
    InsufficientSpaceError,
    JobActiveError,
    ProtocolViolation,
    SourceImageError,
    VerificationError,
    WriteError,
)
from burnengine.storage.gate import Acknowledgment, ConfirmationGate, GateState
from burnengine.storage.mount import MountManager
from burnengine.storage.progress import ProgressMonitor
from burnengine.storage.verification import verify_written_image
from burnengine.storage.writer import CopyEngine


log = LoggerFactory.for_system()

PARTIAL_WRITE_WARNING = (
    "{device} was partially written ({written} of {total} bytes); "
    "its content is undefined and it must be re-imaged from scratch"
)


def create_copy_engine(backend: Optional[str] = None, block_size: Optional[int] = None):
    """Build the configured copy backend ("native" or "dd")."""
    backend = (backend or settings.get_setting("copy_backend", "native") or "native").lower()
    if backend == "dd":
        return DdCopyEngine(block_size=block_size)
    if backend == "native":
        return CopyEngine(block_size=block_size)
    raise ValueError(f"Unknown copy backend: {backend}")


class _Finished:
    __slots__ = ("result", "elapsed")

    def __init__(self, result: WriteResult, elapsed: float) -> None:
        self.result = result
        self.elapsed = elapsed


class RunHandle:
    """Caller side of a running job: progress stream and final result."""

    def __init__(self, job: WriteJob, cancel_event: threading.Event) -> None:
        self.job = job
        self._cancel_event = cancel_event
        self._queue: queue.Queue = queue.Queue()
        self._monitor = ProgressMonitor(job.total_bytes)
        self._done = threading.Event()
        self._result: WriteResult | None = None
        self._elapsed = 0.0
        self._consumed = False
        self._thread: threading.Thread | None = None

    # Worker side

    def _publish(self, sample: ProgressSample) -> None:
        self._queue.put(sample)

    def _complete(self, result: WriteResult, elapsed: float) -> None:
        self._result = result
        self._elapsed = elapsed
        self._done.set()
        self._queue.put(_Finished(result, elapsed))

    # Caller side

    def _samples(self) -> Iterator[ProgressSample]:
        while True:
            item = self._queue.get()
            if isinstance(item, _Finished):
                return
            yield item

    def progress(self) -> Iterator[ProgressSnapshot]:
        """Snapshots in increasing byte order, then a summary on success.

        The stream can be consumed once; it is not resumable.
        """
        if self._consumed:
            raise ProtocolViolation(f"Progress stream of {self.job.job_id} already consumed")
        self._consumed = True
        yield from self._monitor.track(self._samples())
        result = self.result()
        if result.ok:
            yield self._monitor.summary(self._elapsed)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def result(self, timeout: Optional[float] = None) -> WriteResult:
        if not self._done.wait(timeout):
            raise TimeoutError(f"Job {self.job.job_id} still running")
        assert self._result is not None
        return self._result

    def cancel(self) -> None:
        self._cancel_event.set()


@dataclass
class _JobRecord:
    token: JobToken
    cancel_event: threading.Event = field(default_factory=threading.Event)
    handle: RunHandle | None = None


class BurnService:
    """Safe write orchestration over a catalog, mount manager and copy engine.

    Args:
        catalog: Device inventory
        mount_manager: Unmounts the target before writing
        engine: Copy backend with ``execute(job, cancel_event)``
        job_slot: Single active job token
        device_locker: Factory for an exclusive lock on the device node
        verifier: Read-back check, ``(image, device, total_bytes) -> (ok, a, b)``
        confirm_timeout: Seconds allowed per confirmation answer
    """

    def __init__(
        self,
        catalog: Optional[DeviceCatalog] = None,
        mount_manager: Optional[MountManager] = None,
        engine=None,
        job_slot: Optional[JobSlot] = None,
        device_locker: Callable[[str], DeviceLock] = DeviceLock,
        verifier: Callable[..., tuple[bool, str, str]] = verify_written_image,
        confirm_timeout: Optional[float] = None,
    ) -> None:
        self.catalog = catalog or DeviceCatalog()
        self.mount_manager = mount_manager or MountManager()
        self.engine = engine or create_copy_engine()
        self.job_slot = job_slot or JobSlot()
        self._device_locker = device_locker
        self._verifier = verifier
        if confirm_timeout is None:
            confirm_timeout = settings.get_float("confirm_timeout_seconds")
        self.confirm_timeout = confirm_timeout
        self._jobs: dict[str, _JobRecord] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Discovery and job creation (no side effects)
    # ------------------------------------------------------------------

    def list_candidate_devices(self) -> list[BlockDevice]:
        return self.catalog.list_candidate_devices()

    @staticmethod
    def _inspect_image(source_path) -> tuple[Path, int]:
        path = Path(source_path).expanduser()
        if not path.is_file():
            raise SourceImageError(str(path), "not found or not a regular file")
        if not os.access(path, os.R_OK):
            raise SourceImageError(str(path), "not readable")
        total_bytes = path.stat().st_size
        if total_bytes == 0:
            raise SourceImageError(str(path), "image is empty")
        return path, total_bytes

    def begin_job(self, source_path, device_id: str) -> WriteJob:
        """Create a PENDING job after validating image, device and capacity.

        Raises:
            SourceImageError, EnumerationError, DeviceNotFoundError,
            DeviceNotEligibleError, InsufficientSpaceError, JobActiveError
        """
        path, total_bytes = self._inspect_image(source_path)
        device = self.catalog.require_eligible(device_id)
        if total_bytes > device.size_bytes:
            raise InsufficientSpaceError(path.name, total_bytes, device.identifier, device.size_bytes)

        job_id = new_job_id("write")
        token = self.job_slot.acquire(job_id)
        job = WriteJob(
            job_id=job_id,
            source_image_path=path,
            target_device=device,
            total_bytes=total_bytes,
            gate=ConfirmationGate(device, timeout=self.confirm_timeout),
        )
        with self._lock:
            self._jobs[job_id] = _JobRecord(token=token)
        LoggerFactory.for_write(job_id).info(
            f"Job created: {path.name} -> {device.format_label()}"
        )
        return job

    def verify_device(self, source_path, device_id: str) -> tuple[bool, str, str]:
        """Compare an already written drive with an image, without writing.

        Returns:
            (matches, image_digest, device_digest)

        Raises:
            SourceImageError, EnumerationError, DeviceNotFoundError,
            DeviceNotEligibleError, InsufficientSpaceError, JobActiveError,
            VerificationError
        """
        path, total_bytes = self._inspect_image(source_path)
        device = self.catalog.require_eligible(device_id)
        if total_bytes > device.size_bytes:
            raise InsufficientSpaceError(path.name, total_bytes, device.identifier, device.size_bytes)
        active_job_id = self.job_slot.active_job_id
        if active_job_id is not None:
            raise JobActiveError(active_job_id)
        with operation_context("verify", device=device.identifier, image=path.name):
            return self._verifier(path, device.identifier, total_bytes)

    def _record(self, job: WriteJob) -> _JobRecord:
        with self._lock:
            record = self._jobs.get(job.job_id)
        if record is None or job.is_finished:
            raise ProtocolViolation(f"Job {job.job_id} is not active")
        return record

    def _finish(self, job: WriteJob) -> None:
        with self._lock:
            record = self._jobs.pop(job.job_id, None)
        if record is not None:
            self.job_slot.release(record.token)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def confirm_step(self, job: WriteJob, ack: Acknowledgment) -> GateState:
        """Advance the confirmation gate.

        A cancelled gate destroys the job and frees the slot. An out-of-order
        step is fatal to the job as well and raises ProtocolViolation.
        """
        self._record(job)
        if job.state is not JobState.PENDING or job.gate is None:
            raise ProtocolViolation(f"Job {job.job_id} is {job.state.value}, not pending")
        try:
            state = job.gate.acknowledge(ack)
        except ProtocolViolation:
            job.gate.cancel("confirmation protocol violated")
            job.transition(JobState.CANCELLED)
            self._finish(job)
            raise
        if state is GateState.DOUBLE_CONFIRMED:
            job.transition(JobState.CONFIRMED)
        elif state is GateState.CANCELLED:
            job.transition(JobState.CANCELLED)
            self._finish(job)
        return state

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, job: WriteJob, verify: Optional[bool] = None) -> RunHandle:
        """Start unmount + copy on a worker thread.

        Raises:
            ProtocolViolation: If the job is not double confirmed or already running
        """
        record = self._record(job)
        if job.state is not JobState.CONFIRMED:
            raise ProtocolViolation(f"Job {job.job_id} is {job.state.value}, not confirmed")
        if verify is None:
            verify = settings.get_bool("verify_after_write")
        with self._lock:
            if record.handle is not None:
                raise ProtocolViolation(f"Job {job.job_id} is already running")
            handle = RunHandle(job, record.cancel_event)
            record.handle = handle
        thread = threading.Thread(
            target=self._worker,
            args=(job, record, handle, verify),
            name=f"burn-{job.job_id}",
            daemon=True,
        )
        handle._thread = thread
        thread.start()
        return handle

    def cancel(self, job: WriteJob) -> bool:
        """Request cooperative cancellation; returns False if nothing to cancel."""
        with self._lock:
            record = self._jobs.get(job.job_id)
            running = record is not None and record.handle is not None
        if record is None or job.is_finished:
            return False
        if running:
            record.cancel_event.set()
            LoggerFactory.for_write(job.job_id).warning("Cancellation requested")
            return True
        if job.state is JobState.PENDING and job.gate is not None:
            job.gate.cancel()
        job.transition(JobState.CANCELLED)
        self._finish(job)
        return True

    def _revalidate(self, job: WriteJob) -> BlockDevice:
        live = self.catalog.require_eligible(job.target_device.identifier)
        snapshot = job.target_device
        if (live.size_bytes, live.model, live.vendor) != (
            snapshot.size_bytes,
            snapshot.model,
            snapshot.vendor,
        ):
            raise DeviceNotEligibleError(
                live.identifier, "device changed since it was confirmed"
            )
        if job.total_bytes > live.size_bytes:
            raise InsufficientSpaceError(
                job.source_image_path.name, job.total_bytes, live.identifier, live.size_bytes
            )
        return live

    def _worker(self, job: WriteJob, record: _JobRecord, handle: RunHandle, verify: bool) -> None:
        jlog = LoggerFactory.for_write(job.job_id)
        progress_log = ThrottledLogger(LoggerFactory.for_progress(job.job_id))
        device_path = job.target_device.identifier
        condition = DeviceCondition.UNTOUCHED
        error: Exception | None = None
        warning: str | None = None
        verified: bool | None = None
        lock: DeviceLock | None = None
        start = time.monotonic()
        write_elapsed = 0.0

        EventLogger.log_write_started(
            jlog, str(job.source_image_path), device_path, job.total_bytes
        )
        try:
            live = self._revalidate(job)
            lock = self._device_locker(device_path)
            lock.acquire()

            job.transition(JobState.UNMOUNTING)
            self.mount_manager.unmount_all(live)
            condition = DeviceCondition.UNMOUNTED

            live = self._revalidate(job)
            if self.mount_manager.is_mounted(live):
                raise DeviceBusyError(
                    device_path, self.mount_manager.mount_points(live), reason="remounted before write"
                )
            if record.cancel_event.is_set():
                job.transition(JobState.CANCELLED)
                return

            job.transition(JobState.WRITING)
            next_decile = 10
            write_start = time.monotonic()
            for sample in self.engine.execute(job, record.cancel_event):
                condition = DeviceCondition.PARTIALLY_WRITTEN
                handle._publish(sample)
                progress_log.debug(
                    job.job_id,
                    f"Wrote {sample.bytes_written}/{sample.total_bytes} bytes",
                )
                percent = sample.bytes_written * 100 / sample.total_bytes
                if percent >= next_decile:
                    EventLogger.log_write_progress(
                        jlog, percent, sample.bytes_written, sample.rate_bytes_per_sec or 0.0
                    )
                    next_decile = int(percent // 10) * 10 + 10
            write_elapsed = time.monotonic() - write_start

            if job.bytes_written < job.total_bytes:
                job.transition(JobState.CANCELLED)
                if job.bytes_written:
                    warning = PARTIAL_WRITE_WARNING.format(
                        device=device_path, written=job.bytes_written, total=job.total_bytes
                    )
                    jlog.warning(warning)
                return

            condition = DeviceCondition.WRITTEN
            if verify:
                with operation_context("verify", job_id=job.job_id, device=device_path):
                    verified, _, _ = self._verifier(
                        job.source_image_path, device_path, job.total_bytes
                    )
                if not verified:
                    raise WriteError("verification mismatch", job.bytes_written, device_path)
            job.transition(JobState.SUCCEEDED)
        except WriteError as write_error:
            error = write_error
            if write_error.target_touched:
                condition = DeviceCondition.PARTIALLY_WRITTEN
                warning = PARTIAL_WRITE_WARNING.format(
                    device=device_path, written=job.bytes_written, total=job.total_bytes
                )
            jlog.error(f"Write failed: {write_error.reason}")
            job.transition(JobState.FAILED, write_error.reason)
        except VerificationError as verify_error:
            error = verify_error
            jlog.error(str(verify_error))
            job.transition(JobState.FAILED, str(verify_error))
        except (BurnError, OSError) as other_error:
            error = other_error
            jlog.error(f"Job aborted: {other_error}")
            job.transition(JobState.FAILED, str(other_error))
        except Exception as unexpected:
            error = unexpected
            jlog.exception("Unexpected error in write worker")
            if not job.is_finished:
                job.transition(JobState.FAILED, str(unexpected))
        finally:
            if lock is not None:
                lock.release()
            elapsed = time.monotonic() - start
            result = WriteResult(
                job_id=job.job_id,
                state=job.state,
                bytes_written=job.bytes_written,
                total_bytes=job.total_bytes,
                device_condition=condition,
                error=error,
                warning=warning,
                verified=verified,
            )
            self._finish(job)
            EventLogger.log_write_finished(
                jlog,
                job.state.value,
                job.bytes_written,
                device_condition=condition.value,
                duration_seconds=round(elapsed, 2),
            )
            handle._complete(result, write_elapsed)
