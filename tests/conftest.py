"""
Pytest configuration and shared fixtures for burnengine tests.

Provides lsblk payloads for the device classes that matter to the safety
rules, fake command runners, and a stub raw device that records writes.
"""

import copy
import errno
import json
import subprocess
import threading
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from burnengine.config import settings
from burnengine.domain.models import BlockDevice, BusKind, WriteJob
from burnengine.services.burner import BurnService
from burnengine.storage.devices import DeviceCatalog
from burnengine.storage.mount import MountManager
from burnengine.storage.writer import CopyEngine


USB_STICK_SIZE = 16008609792  # "/dev/sdb 14.9GB"


@pytest.fixture(autouse=True)
def default_settings(tmp_path):
    """Run every test against built-in defaults, never the user's settings file."""
    settings.load_settings(tmp_path / "no-settings.json")
    yield
    settings.load_settings(tmp_path / "no-settings.json")


# ==============================================================================
# lsblk Fixtures
# ==============================================================================


@pytest.fixture
def lsblk_usb_stick() -> Dict[str, Any]:
    """A removable USB flash drive with one mounted partition."""
    return {
        "name": "sdb",
        "type": "disk",
        "size": USB_STICK_SIZE,
        "model": "Cruzer Blade    ",
        "vendor": "SanDisk ",
        "tran": "usb",
        "rm": True,
        "mountpoint": None,
        "children": [
            {
                "name": "sdb1",
                "type": "part",
                "size": USB_STICK_SIZE - 1048576,
                "tran": None,
                "rm": True,
                "mountpoint": "/media/user/STICK",
            }
        ],
    }


@pytest.fixture
def lsblk_sata_disk() -> Dict[str, Any]:
    """The system SATA disk - must never be offered."""
    return {
        "name": "sda",
        "type": "disk",
        "size": 256060514304,
        "model": "Samsung SSD 860",
        "vendor": "ATA     ",
        "tran": "sata",
        "rm": False,
        "mountpoint": None,
        "children": [
            {"name": "sda1", "type": "part", "size": 536870912, "mountpoint": "/boot/efi"},
            {"name": "sda2", "type": "part", "size": 255522586624, "mountpoint": "/"},
        ],
    }


@pytest.fixture
def lsblk_nvme_disk() -> Dict[str, Any]:
    return {
        "name": "nvme0n1",
        "type": "disk",
        "size": 512110190592,
        "model": "WD Blue SN570",
        "vendor": None,
        "tran": "nvme",
        "rm": "0",
        "mountpoint": None,
        "children": [
            {"name": "nvme0n1p1", "type": "part", "size": 512109142016, "mountpoint": "/home"},
        ],
    }


@pytest.fixture
def lsblk_removable_system_disk() -> Dict[str, Any]:
    """A SATA disk in a hot-swap bay that (wrongly) reports itself removable."""
    return {
        "name": "sdc",
        "type": "disk",
        "size": 1000204886016,
        "model": "WDC WD10EZEX",
        "vendor": "ATA     ",
        "tran": "sata",
        "rm": "1",
        "mountpoint": None,
    }


@pytest.fixture
def lsblk_records(
    lsblk_sata_disk, lsblk_nvme_disk, lsblk_removable_system_disk, lsblk_usb_stick
) -> List[Dict[str, Any]]:
    loop = {"name": "loop0", "type": "loop", "size": 4096, "tran": None, "rm": "0"}
    rom = {"name": "sr0", "type": "rom", "size": 1073741312, "tran": "usb", "rm": "1"}
    return [lsblk_sata_disk, lsblk_nvme_disk, lsblk_removable_system_disk, lsblk_usb_stick, loop, rom]


@pytest.fixture
def lsblk_output(lsblk_records) -> str:
    return json.dumps({"blockdevices": lsblk_records})


def make_lsblk_runner(*payloads):
    """Runner returning the given lsblk payloads in turn (the last one repeats)."""
    outputs = [p if isinstance(p, str) else json.dumps(p) for p in payloads]
    calls = []

    def runner(command, **kwargs):
        calls.append(command)
        stdout = outputs[min(len(calls), len(outputs)) - 1]
        return subprocess.CompletedProcess(command, 0, stdout=stdout, stderr="")

    runner.calls = calls
    return runner


@pytest.fixture
def lsblk_runner():
    return make_lsblk_runner


@pytest.fixture
def usb_device(lsblk_usb_stick) -> BlockDevice:
    return BlockDevice.from_lsblk_dict(lsblk_usb_stick)


@pytest.fixture
def small_usb_device() -> BlockDevice:
    return BlockDevice(
        identifier="/dev/sdb",
        size_bytes=1073741824,
        bus_kind=BusKind.USB,
        removable=True,
    )


# ==============================================================================
# Mount Fixtures
# ==============================================================================


class FakeMountRunner:
    """Stands in for ``umount``/``sync``; successful umounts edit the mounts file."""

    def __init__(self, mounts_path: Path, fail_times: int = 0):
        self.mounts_path = mounts_path
        self.fail_times = fail_times
        self.calls: List[List[str]] = []

    def __call__(self, command, check=True, **kwargs):
        self.calls.append(list(command))
        if command[0] == "umount":
            if self.fail_times:
                self.fail_times -= 1
                raise subprocess.CalledProcessError(
                    32, command, stderr=f"umount: {command[1]}: target is busy."
                )
            target = command[1]
            lines = self.mounts_path.read_text().splitlines(keepends=True)
            kept = [line for line in lines if line.split()[1] != target]
            self.mounts_path.write_text("".join(kept))
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    @property
    def umount_calls(self) -> List[List[str]]:
        return [call for call in self.calls if call[0] == "umount"]


@pytest.fixture
def mounts_file(tmp_path) -> Path:
    path = tmp_path / "mounts"
    path.write_text(
        "/dev/sda2 / ext4 rw,relatime 0 0\n"
        "/dev/sda1 /boot/efi vfat rw,relatime 0 0\n"
        "proc /proc proc rw,nosuid,nodev,noexec,relatime 0 0\n"
        "/dev/sdb1 /media/user/STICK vfat rw,nosuid,nodev 0 0\n"
    )
    return path


@pytest.fixture
def fake_mount_runner():
    return FakeMountRunner


# ==============================================================================
# Raw Device Fixtures
# ==============================================================================


class StubTarget:
    """Records everything written to the 'device'.

    Args:
        fail_on_write: 1-based write call that raises EIO
        block_on_write: 1-based write call that waits for ``release``
    """

    def __init__(self, fail_on_write: Optional[int] = None, block_on_write: Optional[int] = None):
        self.fail_on_write = fail_on_write
        self.block_on_write = block_on_write
        self.release = threading.Event()
        self.blocked = threading.Event()
        self.data = bytearray()
        self.writes = 0
        self.flushes = 0
        self.closed = False
        self.opened: List[str] = []
        self.opener_threads: List[str] = []

    def open(self, path):
        self.opened.append(path)
        self.opener_threads.append(threading.current_thread().name)
        return self

    def write(self, data):
        self.writes += 1
        if self.writes == self.fail_on_write:
            raise OSError(errno.EIO, "Input/output error")
        if self.writes == self.block_on_write:
            self.blocked.set()
            self.release.wait(5)
        self.data.extend(bytes(data))
        return len(data)

    def flush(self):
        self.flushes += 1

    def close(self):
        self.closed = True


@pytest.fixture
def stub_target():
    return StubTarget()


@pytest.fixture
def make_stub_target():
    return StubTarget


@pytest.fixture
def image_factory(tmp_path):
    """Create an image file with deterministic content of the given size."""

    def _make(size: int, name: str = "image.iso") -> Path:
        path = tmp_path / name
        path.write_bytes(bytes(i % 251 for i in range(size)))
        return path

    return _make


@pytest.fixture
def make_job():
    def _make(image_path, device: BlockDevice, total_bytes: Optional[int] = None) -> WriteJob:
        if total_bytes is None:
            total_bytes = Path(image_path).stat().st_size
        return WriteJob(
            job_id="write-test0001",
            source_image_path=Path(image_path),
            target_device=device,
            total_bytes=total_bytes,
        )

    return _make


# ==============================================================================
# Service Fixtures
# ==============================================================================


class FakeDeviceLock:
    def __init__(self, device_path: str, registry: list):
        self.device_path = device_path
        self.acquired = False
        self.released = False
        registry.append(self)

    def acquire(self):
        self.acquired = True

    def release(self):
        self.released = True


@pytest.fixture
def service_harness(lsblk_usb_stick, lsblk_sata_disk, mounts_file):
    """Build a BurnService wired to fakes for lsblk, umount, locks and the device."""

    def _build(
        *,
        payloads=None,
        target: Optional[StubTarget] = None,
        block_size: int = 4096,
        umount_fail_times: int = 0,
        verifier=None,
        confirm_timeout=None,
    ):
        if payloads is None:
            payloads = [{"blockdevices": [copy.deepcopy(lsblk_sata_disk), copy.deepcopy(lsblk_usb_stick)]}]
        runner = make_lsblk_runner(*payloads)
        target = target or StubTarget()
        mount_runner = FakeMountRunner(mounts_file, fail_times=umount_fail_times)
        sleep = MagicMock()
        locks: list = []
        engine = CopyEngine(
            block_size=block_size,
            flush_interval_bytes=block_size * 4,
            target_opener=target.open,
        )
        service = BurnService(
            catalog=DeviceCatalog(runner=runner),
            mount_manager=MountManager(
                runner=mount_runner,
                mounts_path=mounts_file,
                attempts=3,
                backoff=1.0,
                sleep=sleep,
            ),
            engine=engine,
            device_locker=lambda path: FakeDeviceLock(path, locks),
            verifier=verifier or MagicMock(return_value=(True, "a" * 64, "a" * 64)),
            confirm_timeout=confirm_timeout,
        )
        return SimpleNamespace(
            service=service,
            target=target,
            lsblk=runner,
            mount_runner=mount_runner,
            mounts_file=mounts_file,
            sleep=sleep,
            locks=locks,
        )

    return _build
