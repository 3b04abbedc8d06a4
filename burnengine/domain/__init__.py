"""Domain models for ISO write jobs.

This package contains type-safe domain objects shared by the device catalog,
the confirmation gate, the copy engine and the burn service.
"""

from __future__ import annotations

from .models import (
    BlockDevice,
    BusKind,
    DeviceCondition,
    JobState,
    ProgressSample,
    ProgressSnapshot,
    WriteJob,
    WriteResult,
)


__all__ = [
    "BlockDevice",
    "BusKind",
    "DeviceCondition",
    "JobState",
    "ProgressSample",
    "ProgressSnapshot",
    "WriteJob",
    "WriteResult",
]
