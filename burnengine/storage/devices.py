"""Block device discovery and classification using lsblk.

The catalog enumerates whole-disk block devices with ``lsblk -J -b`` and
classifies each one by bus and removable flag. Only devices that are both on
the USB bus AND flagged removable are offered as write targets; SATA and NVMe
drives are rejected even when they (wrongly) report themselves removable.
Empty card-reader slots (size 0) and devices below ``min_device_size_bytes``
(100 MB by default) are rejected as well.

Every enumeration keeps the full classified inventory, rejected system drives
included, so that callers can re-validate a device by identifier immediately
before a destructive step instead of trusting an older snapshot.

Transport Detection:
    lsblk's TRAN column is used when present. When it is empty (some USB
    bridges and older util-linux releases), the ``/sys/block/<name>/device``
    link is resolved and its path searched for ``/usb``, ``nvme``, ``mmc`` and
    ``ata`` in that order.

Failures:
    An unreadable inventory (lsblk missing, non-zero exit, permission denied,
    malformed JSON) raises EnumerationError. It is never retried and never
    answered from a stale cache.

Example:
    >>> from burnengine.storage.devices import DeviceCatalog
    >>> catalog = DeviceCatalog()
    >>> for device in catalog.list_candidate_devices():
    ...     print(device.format_label())
    /dev/sdb SanDisk Cruzer (14.9GB)
"""

from __future__ import annotations

import json
import re
import subprocess
from pathlib import Path
from typing import Callable, Optional

from burnengine.config import settings
from burnengine.domain.models import BlockDevice, BusKind
from burnengine.logging import LoggerFactory

from .exceptions import DeviceNotEligibleError, DeviceNotFoundError, EnumerationError


log = LoggerFactory.for_usb()

LSBLK_COLUMNS = "NAME,TYPE,SIZE,MODEL,VENDOR,TRAN,RM,MOUNTPOINT"
SYS_BLOCK_ROOT = Path("/sys/block")

CommandRunner = Callable[[list[str]], subprocess.CompletedProcess]


def run_command(command, check=True, log_output=True, log_command=True):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def _run_lsblk(command: list[str]) -> subprocess.CompletedProcess:
    return run_command(command, log_output=False)


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def format_device_label(device):
    if isinstance(device, BlockDevice):
        name = device.identifier
        size_label = human_size(device.size_bytes)
    else:
        name = str(device or "")
        size_label = ""
    if size_label:
        size_label = re.sub(r"\.0([A-Z])", r"\1", size_label)
        return f"{name} {size_label}".strip()
    return name


def normalize_identifier(device_id: str) -> str:
    """Accept ``sdb`` or ``/dev/sdb`` and return the node path."""
    device_id = device_id.strip()
    if device_id.startswith("/dev/"):
        return device_id
    return f"/dev/{device_id}"


def detect_transport(name: str, sys_block_root: Path = SYS_BLOCK_ROOT) -> BusKind:
    """Resolve the sysfs device link to find the bus a disk hangs off."""
    device_link = sys_block_root / name / "device"
    try:
        real_path = device_link.resolve(strict=True).as_posix()
    except (OSError, RuntimeError):
        return BusKind.OTHER
    if "/usb" in real_path:
        return BusKind.USB
    if "nvme" in real_path:
        return BusKind.NVME
    if "mmc" in real_path:
        return BusKind.OTHER
    if "ata" in real_path:
        return BusKind.SATA
    return BusKind.OTHER


class DeviceCatalog:
    """Enumerates and classifies block devices.

    Args:
        runner: Runs a command list and returns a CompletedProcess; raises
            CalledProcessError on failure. Defaults to lsblk via subprocess.
        sys_block_root: Root of the sysfs block tree, used for transport
            fallback detection.
        min_size_bytes: Smallest device offered as a target; read from the
            ``min_device_size_bytes`` setting when omitted.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        sys_block_root: Path = SYS_BLOCK_ROOT,
        min_size_bytes: Optional[int] = None,
    ) -> None:
        self._runner = runner or _run_lsblk
        self._sys_block_root = sys_block_root
        if min_size_bytes is None:
            min_size_bytes = settings.get_int(
                "min_device_size_bytes", settings.DEFAULT_MIN_DEVICE_SIZE_BYTES
            )
        self.min_size_bytes = min_size_bytes
        self._inventory: dict[str, BlockDevice] = {}
        self._last_names: tuple[str, ...] | None = None

    @property
    def inventory(self) -> dict[str, BlockDevice]:
        """Full classified inventory from the last enumeration."""
        return dict(self._inventory)

    def _query(self) -> list[dict]:
        command = ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS]
        try:
            result = self._runner(command)
        except FileNotFoundError as error:
            raise EnumerationError(f"lsblk not available: {error}") from error
        except PermissionError as error:
            raise EnumerationError(f"permission denied: {error}") from error
        except subprocess.CalledProcessError as error:
            stderr = (error.stderr or "").strip() if isinstance(error.stderr, str) else ""
            raise EnumerationError(stderr or f"lsblk exited with {error.returncode}") from error
        try:
            data = json.loads(result.stdout)
        except (TypeError, json.JSONDecodeError) as error:
            raise EnumerationError(f"invalid lsblk output: {error}") from error
        if not isinstance(data, dict) or not isinstance(data.get("blockdevices"), list):
            raise EnumerationError("lsblk output has no blockdevices list")
        return data["blockdevices"]

    def _classify(self, record: dict) -> BlockDevice:
        bus_kind = BusKind.from_transport(record.get("tran"))
        if bus_kind is BusKind.OTHER and not record.get("tran"):
            bus_kind = detect_transport(record["name"], self._sys_block_root)
        return BlockDevice.from_lsblk_dict(record, bus_kind=bus_kind)

    def list_block_devices(self) -> list[BlockDevice]:
        """Enumerate every whole disk, eligible or not."""
        inventory: dict[str, BlockDevice] = {}
        for record in self._query():
            if record.get("type") != "disk" or not record.get("name"):
                continue
            try:
                device = self._classify(record)
            except (KeyError, TypeError, ValueError) as error:
                log.warning(f"Skipping unparsable lsblk record {record.get('name')}: {error}")
                continue
            inventory[device.identifier] = device
            reason = self.rejection_reason(device)
            if reason:
                log.trace(f"{device.identifier} rejected: {reason}")
        names = tuple(inventory)
        if names != self._last_names:
            if names:
                log.debug(f"lsblk found {len(names)} disks: {', '.join(names)}")
            else:
                log.debug("lsblk found no disks")
            self._last_names = names
        self._inventory = inventory
        return list(inventory.values())

    def list_candidate_devices(self) -> list[BlockDevice]:
        """Return only removable USB devices with a usable medium; an empty list is not an error."""
        return [
            device for device in self.list_block_devices() if self.rejection_reason(device) is None
        ]

    def rejection_reason(self, device: BlockDevice) -> str | None:
        return device.rejection_reason(self.min_size_bytes)

    def get_device(self, identifier: str, refresh: bool = True) -> BlockDevice | None:
        """Look up a device by ``sdb`` or ``/dev/sdb``, re-querying by default."""
        if refresh or not self._inventory:
            self.list_block_devices()
        return self._inventory.get(normalize_identifier(identifier))

    def require_eligible(self, identifier: str) -> BlockDevice:
        """Live re-query plus eligibility check.

        Raises:
            DeviceNotFoundError: The device is gone
            DeviceNotEligibleError: The device is not a removable USB drive
        """
        device = self.get_device(identifier, refresh=True)
        if device is None:
            raise DeviceNotFoundError(normalize_identifier(identifier))
        reason = self.rejection_reason(device)
        if reason:
            raise DeviceNotEligibleError(device.identifier, reason)
        return device
