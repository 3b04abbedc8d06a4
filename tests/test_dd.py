"""Tests for the dd copy backend.

The dd binary is replaced by small shell scripts that print what GNU dd
prints on stderr with ``status=progress``.
"""

import stat
import threading

import pytest

from burnengine.storage.dd import DdCopyEngine, parse_dd_line
from burnengine.storage.exceptions import WriteError


TOTAL = 2097152


def _fake_dd(tmp_path, body):
    script = tmp_path / "dd"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)


@pytest.fixture
def dd_job(tmp_path, make_job, small_usb_device):
    return make_job(tmp_path / "image.iso", small_usb_device, total_bytes=TOTAL)


class TestParseLine:
    @pytest.mark.parametrize(
        "line,expected",
        [
            ("1048576 bytes (1.0 MB, 1.0 MiB) copied, 1 s, 1.0 MB/s", ("progress", 1048576)),
            ("  2097152 bytes (2.1 MB, 2.0 MiB) copied, 2.01 s, 1.0 MB/s", ("progress", 2097152)),
            ("512 bytes copied, 0.001 s, 512 kB/s", ("progress", 512)),
            ("2+0 records in", ("ignore", None)),
            ("1+1 records out", ("ignore", None)),
            ("", ("ignore", None)),
            ("   ", ("ignore", None)),
            (
                "dd: error writing '/dev/sdb': No space left on device",
                ("error", "dd: error writing '/dev/sdb': No space left on device"),
            ),
            ("Segmentation fault", ("malformed", "Segmentation fault")),
        ],
    )
    def test_classification(self, line, expected):
        assert parse_dd_line(line) == expected


class TestBuildCommand:
    def test_arguments(self, dd_job):
        command = DdCopyEngine(block_size=4194304, dd_path="/bin/dd").build_command(dd_job)

        assert command[0] == "/bin/dd"
        assert f"if={dd_job.source_image_path}" in command
        assert "of=/dev/sdb" in command
        assert "bs=4194304" in command
        assert "status=progress" in command
        assert "conv=fsync" in command

    def test_missing_dd(self, dd_job, mocker):
        mocker.patch("burnengine.storage.dd.shutil.which", return_value=None)

        with pytest.raises(WriteError, match="dd not found") as exc_info:
            DdCopyEngine().build_command(dd_job)

        assert not exc_info.value.target_touched

    def test_timeout_from_settings(self):
        assert DdCopyEngine().progress_timeout == 30.0


class TestExecute:
    def test_progress_samples(self, tmp_path, dd_job):
        dd = _fake_dd(
            tmp_path,
            "printf '1048576 bytes (1.0 MB, 1.0 MiB) copied, 1 s, 1.0 MB/s\\r' >&2\n"
            "printf '1048576 bytes (1.0 MB, 1.0 MiB) copied, 1 s, 1.0 MB/s\\r' >&2\n"
            "printf '2+0 records in\\n2+0 records out\\n' >&2\n"
            "printf '2097152 bytes (2.1 MB, 2.0 MiB) copied, 2 s, 1.0 MB/s\\n' >&2\n"
            "exit 0\n",
        )

        samples = list(DdCopyEngine(dd_path=dd, progress_timeout=5).execute(dd_job))

        assert [s.bytes_written for s in samples] == [1048576, TOTAL]
        assert dd_job.bytes_written == TOTAL

    def test_nonzero_exit_reports_dd_error(self, tmp_path, dd_job):
        dd = _fake_dd(
            tmp_path,
            "printf '1048576 bytes (1.0 MB, 1.0 MiB) copied, 1 s, 1.0 MB/s\\r' >&2\n"
            "printf \"dd: error writing '/dev/sdb': No space left on device\\n\" >&2\n"
            "exit 1\n",
        )

        with pytest.raises(WriteError, match="No space left on device") as exc_info:
            list(DdCopyEngine(dd_path=dd, progress_timeout=5).execute(dd_job))

        assert exc_info.value.bytes_written == 1048576

    def test_malformed_output(self, tmp_path, dd_job):
        dd = _fake_dd(tmp_path, "echo 'something unexpected' >&2\nexit 0\n")

        with pytest.raises(WriteError, match="unrecognised dd output"):
            list(DdCopyEngine(dd_path=dd, progress_timeout=5).execute(dd_job))

    def test_short_transfer(self, tmp_path, dd_job):
        dd = _fake_dd(tmp_path, "printf '4096 bytes copied, 0.1 s, 40 kB/s\\n' >&2\nexit 0\n")

        with pytest.raises(WriteError, match="reported 4096 of"):
            list(DdCopyEngine(dd_path=dd, progress_timeout=5).execute(dd_job))

    def test_silent_dd_times_out(self, tmp_path, dd_job):
        dd = _fake_dd(tmp_path, "exec sleep 10\n")

        with pytest.raises(WriteError, match="no progress from dd"):
            list(DdCopyEngine(dd_path=dd, progress_timeout=0.2).execute(dd_job))

    def test_quiet_final_flush_is_not_a_timeout(self, tmp_path, dd_job):
        dd = _fake_dd(
            tmp_path,
            "printf '2097152 bytes (2.1 MB, 2.0 MiB) copied, 2 s, 1.0 MB/s\\r' >&2\n"
            "sleep 1\n"
            "printf '2+0 records in\\n2+0 records out\\n' >&2\n"
            "exit 0\n",
        )

        samples = list(DdCopyEngine(dd_path=dd, progress_timeout=0.3).execute(dd_job))

        assert [s.bytes_written for s in samples] == [TOTAL]
        assert dd_job.bytes_written == TOTAL

    def test_flush_failure_still_reported(self, tmp_path, dd_job):
        dd = _fake_dd(
            tmp_path,
            "printf '2097152 bytes (2.1 MB, 2.0 MiB) copied, 2 s, 1.0 MB/s\\r' >&2\n"
            "sleep 0.5\n"
            "printf \"dd: fsync failed for '/dev/sdb': Input/output error\\n\" >&2\n"
            "exit 1\n",
        )

        with pytest.raises(WriteError, match="fsync failed"):
            list(DdCopyEngine(dd_path=dd, progress_timeout=0.2).execute(dd_job))

    def test_cancel_interrupts_dd(self, tmp_path, dd_job):
        dd = _fake_dd(
            tmp_path,
            "trap 'printf \"1+0 records in\\n1+0 records out\\n\" >&2; exit 130' INT\n"
            "printf '1048576 bytes (1.0 MB, 1.0 MiB) copied, 1 s, 1.0 MB/s\\r' >&2\n"
            "while true; do sleep 0.1; done\n",
        )
        cancel = threading.Event()
        samples = []

        for sample in DdCopyEngine(dd_path=dd, progress_timeout=5).execute(dd_job, cancel):
            samples.append(sample)
            cancel.set()

        assert [s.bytes_written for s in samples] == [1048576]
        assert dd_job.bytes_written < TOTAL

    def test_start_failure(self, tmp_path, dd_job):
        engine = DdCopyEngine(dd_path=str(tmp_path / "no-such-dd"))

        with pytest.raises(WriteError, match="cannot start dd") as exc_info:
            list(engine.execute(dd_job))

        assert not exc_info.value.target_touched
