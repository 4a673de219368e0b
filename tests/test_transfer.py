"""Tests for the rsync transfer service."""

import io
import os
import shutil
from pathlib import Path
from unittest import mock

import pytest

from home_vault import __util__
from home_vault.core.exclusions import ExclusionSet
from home_vault.core.transfer import (
    RsyncTransfer,
    TransferRequest,
    TransferResult,
    parse_changed_files,
    parse_stats,
)

RSYNC_STATS = """
Number of files: 1,204 (reg: 1,100, dir: 104)
Number of created files: 3 (reg: 3)
Number of regular files transferred: 5
Total file size: 9,876,543 bytes
Total transferred file size: 12,345 bytes
Total bytes sent: 13,000
Total bytes received: 210
"""


class TestParsing:
    def test_parse_stats(self):
        stats = parse_stats(RSYNC_STATS)
        assert stats == {
            "files_transferred": 5,
            "bytes_transferred": 12345,
            "bytes_sent": 13000,
            "bytes_received": 210,
        }

    def test_parse_stats_missing_counters(self):
        assert parse_stats("") == {
            "files_transferred": 0,
            "bytes_transferred": 0,
            "bytes_sent": 0,
            "bytes_received": 0,
        }

    def test_parse_changed_files(self):
        lines = [
            ">f+++++++++ docs/new.txt\n",
            ">f.st...... notes.md\n",
            "cd+++++++++ docs/\n",
            "*deleting   old.txt\n",
            ".f...p..... unchanged-perms.txt\n",
        ]
        assert parse_changed_files(lines) == ["docs/new.txt", "notes.md"]


class TestTransferResult:
    def test_vanished_files_count_as_success(self):
        assert TransferResult(exit_code=0).success
        assert TransferResult(exit_code=24).success
        assert not TransferResult(exit_code=23).success
        assert not TransferResult(exit_code=12).success


class TestBuildCommand:
    def test_local_version_command(self, tmp_path):
        request = TransferRequest(
            source=Path("/home/alice"),
            destination="/mnt/b/incremental/2024-06-01_12-00-00",
            link_dest=tmp_path / "prev",
        )
        cmd = RsyncTransfer().build_command(request, Path("/tmp/filter"))

        assert cmd[:4] == ["rsync", "-a", "-A", "-X"]
        assert "--delete" in cmd
        assert "--delete-excluded" in cmd
        assert "--exclude-from=/tmp/filter" in cmd
        assert f"--link-dest={(tmp_path / 'prev').resolve()}" in cmd
        assert "--checksum" not in cmd
        assert cmd[-2:] == ["/home/alice/", "/mnt/b/incremental/2024-06-01_12-00-00/"]

    def test_remote_checksum_command(self):
        request = TransferRequest(
            source=Path("/home/alice"),
            destination="backup@nas:/vol/current",
            checksum=True,
            bandwidth_limit=5000,
            rsh="ssh -o ConnectTimeout=10",
            preserve_acls_xattrs=False,
            io_timeout=300,
        )
        cmd = RsyncTransfer().build_command(request)

        assert "-A" not in cmd
        assert "--checksum" in cmd
        assert "--bwlimit=5000" in cmd
        assert "--timeout=300" in cmd
        assert cmd[cmd.index("-e") + 1] == "ssh -o ConnectTimeout=10"
        assert not any(c.startswith("--link-dest") for c in cmd)
        assert cmd[-1] == "backup@nas:/vol/current/"

    def test_restore_from_remote_command(self):
        request = TransferRequest(
            source="backup@nas:/vol/current",
            destination="/home/alice",
            delete_excluded=False,
            preserve_acls_xattrs=False,
            dry_run=True,
        )
        cmd = RsyncTransfer().build_command(request)

        assert "--delete" in cmd
        assert "--delete-excluded" not in cmd
        assert "--dry-run" in cmd
        assert cmd[-2:] == ["backup@nas:/vol/current/", "/home/alice/"]

    def test_unlimited_bandwidth_has_no_flag(self):
        request = TransferRequest(source=Path("/a"), destination="/b", bandwidth_limit=0)
        assert not any(c.startswith("--bwlimit") for c in RsyncTransfer().build_command(request))


class TestTransfer:
    def _popen(self, output, returncode):
        proc = mock.MagicMock()
        proc.stdout = io.StringIO(output)
        proc.wait.return_value = returncode
        return proc

    def test_successful_transfer(self):
        output = ">f+++++++++ notes.md\n" + RSYNC_STATS
        with mock.patch.object(
            __util__, "exec_subprocess", return_value=self._popen(output, 0)
        ) as run:
            result = RsyncTransfer().transfer(
                TransferRequest(source=Path("/a"), destination="/b", exclusions=ExclusionSet(["*.tmp"]))
            )

        assert result.success
        assert result.bytes_transferred == 12345
        assert result.changed_files == ["notes.md"]
        kwargs = run.call_args.kwargs
        assert kwargs["method"] == "Popen"
        assert kwargs["env"]["LC_ALL"] == "C"

    def test_failed_transfer_keeps_tail_as_message(self):
        output = "rsync: connection unexpectedly closed\nrsync error: error in rsync protocol data stream (code 12)\n"
        with mock.patch.object(__util__, "exec_subprocess", return_value=self._popen(output, 12)):
            result = RsyncTransfer().transfer(TransferRequest(source=Path("/a"), destination="/b"))

        assert not result.success
        assert result.exit_code == 12
        assert "code 12" in result.message

    def test_missing_binary(self):
        with mock.patch.object(
            __util__,
            "exec_subprocess",
            side_effect=__util__.CommandError(["rsync"], 127, "No such file"),
        ):
            result = RsyncTransfer().transfer(TransferRequest(source=Path("/a"), destination="/b"))

        assert result.exit_code == 127
        assert not result.success


@pytest.mark.skipif(shutil.which("rsync") is None, reason="rsync not installed")
class TestRsyncIntegration:
    """Runs the real rsync binary."""

    def test_link_dest_and_checksum(self, tmp_path):
        source = tmp_path / "src"
        source.mkdir()
        (source / "same.txt").write_text("unchanged content")
        (source / "data.bin").write_bytes(b"A" * 64)
        (source / "skip.tmp").write_text("excluded")
        transfer = RsyncTransfer()
        exclusions = ExclusionSet(["*.tmp"])

        first = tmp_path / "v1"
        result = transfer.transfer(
            TransferRequest(source=source, destination=str(first), exclusions=exclusions,
                            preserve_acls_xattrs=False)
        )
        assert result.success
        assert not (first / "skip.tmp").exists()

        second = tmp_path / "v2"
        result = transfer.transfer(
            TransferRequest(source=source, destination=str(second), exclusions=exclusions,
                            link_dest=first, preserve_acls_xattrs=False)
        )
        assert result.success
        assert os.stat(first / "same.txt").st_ino == os.stat(second / "same.txt").st_ino

        # Same size and mtime, different content: only --checksum notices
        st = os.stat(second / "data.bin")
        os.unlink(second / "data.bin")
        (second / "data.bin").write_bytes(b"B" * 64)
        os.utime(second / "data.bin", ns=(st.st_atime_ns, st.st_mtime_ns))

        result = transfer.transfer(
            TransferRequest(source=source, destination=str(second), exclusions=exclusions,
                            preserve_acls_xattrs=False)
        )
        assert result.bytes_transferred == 0
        assert (second / "data.bin").read_bytes() == b"B" * 64

        result = transfer.transfer(
            TransferRequest(source=source, destination=str(second), exclusions=exclusions,
                            checksum=True, preserve_acls_xattrs=False)
        )
        assert result.success
        assert result.bytes_transferred == 64
        assert result.changed_files == ["data.bin"]
        assert (second / "data.bin").read_bytes() == b"A" * 64
