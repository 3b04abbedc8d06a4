"""Domain model for ISO write jobs.

Type-safe objects passed between the device catalog, the confirmation gate,
the mount manager and the copy engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from burnengine.config.settings import DEFAULT_MIN_DEVICE_SIZE_BYTES
from burnengine.storage.exceptions import ProtocolViolation

if TYPE_CHECKING:
    from burnengine.storage.gate import ConfirmationGate


# ==============================================================================
# Device Domain
# ==============================================================================


class BusKind(Enum):
    """Transport a block device is attached through."""

    USB = "usb"
    SATA = "sata"
    NVME = "nvme"
    OTHER = "other"

    @classmethod
    def from_transport(cls, tran: str | None) -> BusKind:
        """Map an lsblk TRAN value (usb, sata, ata, nvme, ...) to a BusKind."""
        value = (tran or "").strip().lower()
        if value == "usb":
            return cls.USB
        if value in ("sata", "ata"):
            return cls.SATA
        if value == "nvme":
            return cls.NVME
        return cls.OTHER


@dataclass(frozen=True)
class BlockDevice:
    """A whole-disk block device as reported by the OS.

    Snapshots are immutable; live state is re-queried through the catalog
    whenever it matters.
    """

    identifier: str  # e.g., "/dev/sdb"
    size_bytes: int
    bus_kind: BusKind
    removable: bool
    mount_points: tuple[str, ...] = ()
    model: str | None = None
    vendor: str | None = None

    @property
    def name(self) -> str:
        """Kernel name (e.g., sdb)."""
        return Path(self.identifier).name

    @property
    def is_eligible(self) -> bool:
        """Only removable USB devices with a medium may ever be written."""
        return self.rejection_reason() is None

    @property
    def size_gb(self) -> float:
        """Size in gigabytes."""
        return self.size_bytes / (1024**3)

    def rejection_reason(self, min_size_bytes: int = DEFAULT_MIN_DEVICE_SIZE_BYTES) -> str | None:
        """Why this device is not a write target, or None when eligible.

        Empty card-reader slots report a size of 0 and are rejected like
        any device below ``min_size_bytes``.
        """
        if self.bus_kind is not BusKind.USB:
            return f"bus is {self.bus_kind.value}, not usb"
        if not self.removable:
            return "device is not removable"
        if self.size_bytes <= 0:
            return "no medium present"
        if self.size_bytes < min_size_bytes:
            return f"too small ({self.size_bytes} bytes, minimum {min_size_bytes})"
        return None

    def format_label(self) -> str:
        """Format a human-readable label for display.

        Returns: e.g., "/dev/sdb 14.9GB" or "/dev/sdb SanDisk Cruzer (14.9GB)"
        """
        size_str = f"{self.size_gb:.1f}GB"

        parts = []
        if self.vendor:
            parts.append(self.vendor.strip())
        if self.model:
            parts.append(self.model.strip())

        if parts:
            return f"{self.identifier} {' '.join(parts)} ({size_str})"
        return f"{self.identifier} {size_str}"

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any], bus_kind: BusKind | None = None) -> BlockDevice:
        """Convert an lsblk disk record to a BlockDevice.

        Args:
            device: Record from ``lsblk -J -b`` with name, size, tran, rm,
                mountpoint, model, vendor and optional children
            bus_kind: Pre-resolved bus kind; derived from ``tran`` when omitted

        Raises:
            KeyError: If the name is missing
            ValueError: If size cannot be converted to int
        """
        name = device["name"]
        identifier = name if name.startswith("/dev/") else f"/dev/{name}"
        size_bytes = int(device.get("size") or 0)

        vendor = device.get("vendor")
        if vendor:
            vendor = vendor.strip() or None

        model = device.get("model")
        if model:
            model = model.strip() or None

        return cls(
            identifier=identifier,
            size_bytes=size_bytes,
            bus_kind=bus_kind or BusKind.from_transport(device.get("tran")),
            removable=_parse_flag(device.get("rm")),
            mount_points=tuple(_collect_mountpoints(device)),
            model=model,
            vendor=vendor,
        )


def _parse_flag(value: Any) -> bool:
    # lsblk emits booleans on newer util-linux, "1"/"0" strings on older ones
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true")


def _collect_mountpoints(device: dict[str, Any]) -> list[str]:
    mountpoints: list[str] = []
    for key in ("mountpoint", "mountpoints"):
        value = device.get(key)
        if isinstance(value, str) and value:
            mountpoints.append(value)
        elif isinstance(value, list):
            mountpoints.extend(mp for mp in value if mp)
    for child in device.get("children") or []:
        for mountpoint in _collect_mountpoints(child):
            if mountpoint not in mountpoints:
                mountpoints.append(mountpoint)
    return mountpoints


# ==============================================================================
# Write Job Domain
# ==============================================================================


class JobState(Enum):
    """Lifecycle of a write job. Transitions only move forward."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    UNMOUNTING = "unmounting"
    WRITING = "writing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})
_STATE_ORDER = {state: index for index, state in enumerate(JobState)}


@dataclass
class WriteJob:
    """A request to write one image onto one device.

    The job owns its target snapshot; the device's live state is re-queried
    before unmounting and before writing.
    """

    job_id: str
    source_image_path: Path
    target_device: BlockDevice
    total_bytes: int
    state: JobState = JobState.PENDING
    failure_reason: str | None = None
    bytes_written: int = 0
    gate: ConfirmationGate | None = field(default=None, repr=False, compare=False)

    @property
    def is_finished(self) -> bool:
        return self.state.is_terminal

    def transition(self, new_state: JobState, reason: str | None = None) -> None:
        """Move the job forward.

        Raises:
            ProtocolViolation: If the job is terminal or the move goes backwards
        """
        if self.state.is_terminal:
            raise ProtocolViolation(
                f"Job {self.job_id} is already {self.state.value}; cannot move to {new_state.value}"
            )
        if _STATE_ORDER[new_state] <= _STATE_ORDER[self.state]:
            raise ProtocolViolation(
                f"Job {self.job_id} cannot move from {self.state.value} back to {new_state.value}"
            )
        self.state = new_state
        if new_state is JobState.FAILED:
            self.failure_reason = reason or "unknown error"


# ==============================================================================
# Progress Domain
# ==============================================================================


@dataclass(frozen=True)
class ProgressSample:
    """Raw byte-transfer counter emitted by the copy engine."""

    bytes_written: int
    elapsed: float
    total_bytes: int

    @property
    def rate_bytes_per_sec(self) -> float | None:
        if self.elapsed <= 0 or self.bytes_written <= 0:
            return None
        return self.bytes_written / self.elapsed

    @property
    def eta(self) -> float | None:
        rate = self.rate_bytes_per_sec
        if not rate:
            return None
        return max(self.total_bytes - self.bytes_written, 0) / rate


@dataclass(frozen=True)
class ProgressSnapshot:
    """Sample counters plus smoothed rate and ETA, as shown to the operator."""

    bytes_written: int
    elapsed: float
    total_bytes: int
    rate: float | None
    eta: float | None
    final: bool = False

    @property
    def percent(self) -> float | None:
        if not self.total_bytes:
            return None
        return min(100.0, (self.bytes_written / self.total_bytes) * 100)


# ==============================================================================
# Result Domain
# ==============================================================================


class DeviceCondition(Enum):
    """What the operator must assume about the target after a job."""

    UNTOUCHED = "untouched"  # still mounted or never unmounted, no writes
    UNMOUNTED = "unmounted"  # unmounted, no bytes written
    PARTIALLY_WRITTEN = "partially_written"  # content undefined, re-image required
    WRITTEN = "written"


@dataclass(frozen=True)
class WriteResult:
    """Final outcome of ``run(job)``."""

    job_id: str
    state: JobState
    bytes_written: int
    total_bytes: int
    device_condition: DeviceCondition
    error: Exception | None = None
    warning: str | None = None
    verified: bool | None = None

    @property
    def ok(self) -> bool:
        return self.state is JobState.SUCCEEDED
