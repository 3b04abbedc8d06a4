"""Read-back verification using SHA256 checksums."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Callable, Optional

from burnengine.config import settings
from burnengine.logging import get_logger

from .exceptions import VerificationError

log = get_logger(source="verify", tags=["verify"])


def _drop_page_cache(fd: int, path) -> None:
    try:
        os.posix_fadvise(fd, 0, 0, os.POSIX_FADV_DONTNEED)
    except OSError as error:
        log.warning(f"Could not drop cached pages of {path}, reading back may hit the cache: {error}")
        return
    log.debug(f"Dropped cached pages of {path}")

def compute_sha256(
    path,
    total_bytes: int,
    block_size: Optional[int] = None,
    progress_callback: Optional[Callable[[int], None]] = None,
    drop_cache: bool = False,
) -> str:
    """Hash the first ``total_bytes`` of a file or device node.

    With ``drop_cache`` the page cache of ``path`` is discarded first, so a
    freshly written device is read back from the medium and not from memory.

    Raises:
        VerificationError: If the path cannot be read or ends early
    """
    block_size = block_size or settings.get_int("block_size", settings.DEFAULT_BLOCK_SIZE)
    digest = hashlib.sha256()
    remaining = total_bytes
    log.debug(f"Computing sha256 for {path} ({total_bytes} bytes)")
    try:
        with open(path, "rb", buffering=0) as handle:
            if drop_cache:
                _drop_page_cache(handle.fileno(), path)
            while remaining > 0:
                chunk = handle.read(min(block_size, remaining))
                if not chunk:
                    raise VerificationError(
                        f"{path} ended after {total_bytes - remaining} of {total_bytes} bytes",
                        device=str(path),
                    )
                digest.update(chunk)
                remaining -= len(chunk)
                if progress_callback:
                    progress_callback(total_bytes - remaining)
    except OSError as error:
        raise VerificationError(f"Cannot read {path}: {error}", device=str(path)) from error
    checksum = digest.hexdigest()
    log.debug(f"sha256 for {path}: {checksum}")
    return checksum


def verify_written_image(
    source_path: Path,
    device_path: str,
    total_bytes: int,
    block_size: Optional[int] = None,
) -> tuple[bool, str, str]:
    """Compare the image against the first ``total_bytes`` read back from the device.

    Returns:
        (matches, source_digest, device_digest)
    """
    source_digest = compute_sha256(source_path, total_bytes, block_size)
    device_digest = compute_sha256(device_path, total_bytes, block_size, drop_cache=True)
    matches = source_digest == device_digest
    if matches:
        log.info(f"Verification passed for {device_path}")
    else:
        log.error(
            f"Verification mismatch for {device_path}: "
            f"image {source_digest[:12]} != device {device_digest[:12]}"
        )
    return matches, source_digest, device_digest
