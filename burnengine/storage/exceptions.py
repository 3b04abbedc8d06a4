"""Custom exceptions for the write engine.

Exception Hierarchy:
    BurnError (base)
        ├── EnumerationError
        ├── ProtocolViolation
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   ├── DeviceNotEligibleError
        │   └── DeviceBusyError
        ├── JobError
        │   ├── JobActiveError
        │   ├── SourceImageError
        │   └── InsufficientSpaceError
        ├── WriteError
        └── VerificationError

Errors raised before the unmount step leave no side effects and can be
retried by the caller. From the unmount step onward, failures are reported in
a WriteResult together with the device condition.

Cancellation is not an exception: it is the CANCELLED terminal state.

Usage:
    from burnengine.storage.exceptions import InsufficientSpaceError

    if total_bytes > device.size_bytes:
        raise InsufficientSpaceError(str(image), total_bytes, device.identifier, device.size_bytes)
"""

from __future__ import annotations


class BurnError(Exception):
    """Base exception for all write engine errors."""


class EnumerationError(BurnError):
    """Block device inventory could not be read."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Cannot enumerate block devices: {reason}")


class ProtocolViolation(BurnError):
    """Confirmation or job lifecycle steps were taken out of order."""


class DeviceError(BurnError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Device was not found or has been removed."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class DeviceNotEligibleError(DeviceError):
    """Device is not a removable USB drive and must never be written."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Refusing to write {device_name}: {reason}")


class DeviceBusyError(DeviceError):
    """Device is still mounted or held by another process."""

    def __init__(self, device_name: str, mountpoints: list[str] | None = None, reason: str = ""):
        self.device_name = device_name
        self.mountpoints = list(mountpoints or [])
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if self.mountpoints:
            msg += f". Active mountpoints: {', '.join(self.mountpoints)}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class JobError(BurnError):
    """Base exception for job creation errors."""


class JobActiveError(JobError):
    """Another write job already holds the job slot."""

    def __init__(self, active_job_id: str):
        self.active_job_id = active_job_id
        super().__init__(f"Write job {active_job_id} is already active")


class SourceImageError(JobError):
    """Source image is missing or unreadable."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot use image {path}: {reason}")


class InsufficientSpaceError(JobError):
    """Target device is smaller than the source image."""

    def __init__(
        self,
        source_name: str,
        source_size: int,
        destination_name: str,
        destination_size: int,
    ):
        self.source_name = source_name
        self.source_size = source_size
        self.destination_name = destination_name
        self.destination_size = destination_size
        super().__init__(
            f"Destination {destination_name} ({destination_size} bytes) "
            f"is too small for image {source_name} ({source_size} bytes)"
        )


class WriteError(BurnError):
    """I/O failure while copying the image onto the device."""

    def __init__(
        self,
        reason: str,
        bytes_written: int = 0,
        device: str | None = None,
        target_touched: bool = True,
    ):
        self.reason = reason
        self.bytes_written = bytes_written
        self.device = device
        self.target_touched = target_touched
        super().__init__(f"Write failed after {bytes_written} bytes: {reason}")


class VerificationError(BurnError):
    """Read-back verification could not be performed."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)
