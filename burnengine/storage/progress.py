"""Progress monitoring and formatting for write jobs."""

from __future__ import annotations

from collections import deque
from typing import Iterable, Iterator

from burnengine.domain.models import ProgressSample, ProgressSnapshot

from .devices import human_size


# Number of recent samples the smoothed rate is computed over
WINDOW_SIZE = 5


class ProgressMonitor:
    """Turns raw copy samples into snapshots with a smoothed rate and ETA.

    The rate is taken over the last WINDOW_SIZE samples rather than the whole
    transfer, so a brief stall on a slow flash controller does not make the
    ETA jump. Each ``track`` call starts from an empty window; a job's stream
    cannot be resumed part way through.
    """

    def __init__(self, total_bytes: int, window: int = WINDOW_SIZE) -> None:
        self.total_bytes = total_bytes
        self.window = max(2, window)
        self._samples: deque[ProgressSample] = deque(maxlen=self.window)

    def _smoothed_rate(self) -> float | None:
        newest = self._samples[-1]
        if len(self._samples) > 1:
            oldest = self._samples[0]
            delta_bytes = newest.bytes_written - oldest.bytes_written
            delta_time = newest.elapsed - oldest.elapsed
            if delta_bytes > 0 and delta_time > 0:
                return delta_bytes / delta_time
        return newest.rate_bytes_per_sec

    def update(self, sample: ProgressSample) -> ProgressSnapshot:
        self._samples.append(sample)
        rate = self._smoothed_rate()
        eta = None
        if rate and sample.bytes_written > 0:
            eta = max(self.total_bytes - sample.bytes_written, 0) / rate
        return ProgressSnapshot(
            bytes_written=sample.bytes_written,
            elapsed=sample.elapsed,
            total_bytes=self.total_bytes,
            rate=rate,
            eta=eta,
        )

    def track(self, samples: Iterable[ProgressSample]) -> Iterator[ProgressSnapshot]:
        self._samples.clear()
        for sample in samples:
            yield self.update(sample)

    def summary(self, elapsed_total: float) -> ProgressSnapshot:
        """Final snapshot emitted on success: (total_bytes, elapsed_total)."""
        rate = self.total_bytes / elapsed_total if elapsed_total > 0 else None
        return ProgressSnapshot(
            bytes_written=self.total_bytes,
            elapsed=elapsed_total,
            total_bytes=self.total_bytes,
            rate=rate,
            eta=0.0,
            final=True,
        )


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_progress_lines(title, device, snapshot: ProgressSnapshot | None):
    """Format progress information into display lines."""
    lines = []
    if title:
        lines.append(title)
    if device:
        lines.append(device)
    if snapshot is None:
        lines.append("Working...")
        return lines
    written_line = f"Wrote {human_size(snapshot.bytes_written)}"
    if snapshot.percent is not None:
        written_line = f"{written_line} {snapshot.percent:.1f}%"
    lines.append(written_line)
    if snapshot.rate:
        rate_line = f"{human_size(snapshot.rate)}/s"
        eta = format_eta(snapshot.eta)
        if eta and not snapshot.final:
            rate_line = f"{rate_line} ETA {eta}"
        lines.append(rate_line)
    return lines


def format_progress_line(snapshot: ProgressSnapshot) -> str:
    """Single-line rendering for terminals."""
    return " | ".join(format_progress_lines(None, None, snapshot))
