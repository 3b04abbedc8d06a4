"""Mount state queries and unmounting of a target device.

Mount state is always read live from /proc/mounts; the mount points captured
in a BlockDevice snapshot are never trusted for a destructive decision.

Unmount policy:
    1. Sync filesystem buffers once.
    2. ``umount`` every active mount point of the disk and its partitions,
       deepest path first.
    3. Re-read /proc/mounts. Anything still mounted is retried, up to
       ``attempts`` tries with ``backoff`` seconds between them.
    4. If a mount point survives every attempt, raise DeviceBusyError. The
       caller must abort before any byte is written.

No lazy (``umount -l``) fallback is used: a lazily detached filesystem can
still have writes in flight to the device.
"""

from __future__ import annotations

import re
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional

from burnengine.config import settings
from burnengine.domain.models import BlockDevice
from burnengine.logging import LoggerFactory

from .devices import run_command
from .exceptions import DeviceBusyError


log = LoggerFactory.for_mount()

PROC_MOUNTS = Path("/proc/mounts")

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape_mount_field(value: str) -> str:
    # /proc/mounts encodes spaces, tabs and newlines as \040, \011, \012
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), value)


def partition_pattern(device_name: str) -> re.Pattern:
    """Match the disk node and its partitions (sdb1, nvme0n1p2, mmcblk0p1)."""
    suffix = r"p\d+" if device_name[-1:].isdigit() else r"\d+"
    return re.compile(rf"^/dev/{re.escape(device_name)}(?:{suffix})?$")


class MountManager:
    """Queries and removes mounts for a block device.

    Args:
        runner: Runs a command list with ``check=True`` semantics
        mounts_path: Mount table to read (``/proc/mounts``)
        attempts: Unmount attempts before giving up
        backoff: Seconds to wait between attempts
        sleep: Sleep function, injectable for tests
    """

    def __init__(
        self,
        runner: Optional[Callable[..., subprocess.CompletedProcess]] = None,
        mounts_path: Path = PROC_MOUNTS,
        attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._runner = runner or run_command
        self._mounts_path = mounts_path
        self.attempts = max(1, attempts or settings.get_int("unmount_attempts", 3))
        if backoff is None:
            backoff = settings.get_float("unmount_backoff_seconds", 1.0)
        self.backoff = backoff
        self._sleep = sleep

    def mount_points(self, device: BlockDevice) -> list[str]:
        """Live mount points of the device and its partitions."""
        pattern = partition_pattern(device.name)
        mountpoints: list[str] = []
        with open(self._mounts_path, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) < 2:
                    continue
                source = _unescape_mount_field(parts[0])
                if pattern.match(source):
                    mountpoint = _unescape_mount_field(parts[1])
                    if mountpoint not in mountpoints:
                        mountpoints.append(mountpoint)
        return mountpoints

    def is_mounted(self, device: BlockDevice) -> bool:
        return bool(self.mount_points(device))

    def _sync(self) -> None:
        try:
            log.debug("Syncing filesystem buffers...")
            self._runner(["sync"], check=False)
        except OSError as error:
            log.debug(f"Sync failed: {error}")

    def unmount_all(self, device: BlockDevice) -> None:
        """Unmount every mount point of ``device``.

        Raises:
            DeviceBusyError: If a mount point is still active after all attempts
        """
        if not self.mount_points(device):
            log.debug(f"No mounted partitions on {device.identifier}")
            return

        self._sync()

        for attempt in range(1, self.attempts + 1):
            active = self.mount_points(device)
            if not active:
                break
            log.debug(f"Unmount attempt {attempt}/{self.attempts} on {device.identifier}")

            for mountpoint in sorted(active, key=lambda mp: mp.count("/"), reverse=True):
                try:
                    self._runner(["umount", mountpoint], check=True)
                    log.info(f"Unmounted {mountpoint}")
                except (subprocess.CalledProcessError, OSError) as error:
                    log.warning(f"Failed to unmount {mountpoint}: {error}")

            if not self.mount_points(device):
                break
            if attempt < self.attempts:
                self._sleep(self.backoff)

        remaining = self.mount_points(device)
        if remaining:
            log.error(f"{device.identifier} still mounted at {', '.join(remaining)}")
            raise DeviceBusyError(
                device.identifier,
                remaining,
                reason=f"still mounted after {self.attempts} attempts",
            )
        log.info(f"All partitions of {device.identifier} unmounted")
