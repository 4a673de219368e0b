"""Tests for the repair engine."""

import os
from unittest import mock

import pytest

from home_vault import __util__
from home_vault.core.repair import RepairEngine, RepairReport
from home_vault.core.transfer import TransferRequest
from home_vault.endpoint import LocalEndpoint


@pytest.fixture
def mirror_dir(tmp_path, source_tree, mirror):
    target = tmp_path / "nas" / "current"
    mirror.transfer(TransferRequest(source=source_tree, destination=str(target)))
    return target


def _rot(path, data):
    """Replace the contents of ``path`` keeping its size and mtime."""
    st = os.stat(path)
    assert len(data) == st.st_size
    path.write_bytes(data)
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns))


class TestRepair:
    def test_identical_mirror_is_healthy(self, mirror, source_tree, mirror_dir):
        report = RepairEngine(mirror).repair(source_tree, LocalEndpoint(config={"path": mirror_dir}))

        assert report.healthy
        assert report.bytes_reconciled == 0
        assert report.files_repaired == []
        assert mirror.requests[-1].checksum is True
        assert mirror.requests[-1].link_dest is None

    def test_silent_corruption_repaired(self, mirror, source_tree, mirror_dir):
        _rot(mirror_dir / "docs" / "report.txt", b"QUARTERLY NUMBERS\n")

        report = RepairEngine(mirror).repair(source_tree, LocalEndpoint(config={"path": mirror_dir}))

        assert not report.healthy
        assert report.files_repaired == ["docs/report.txt"]
        assert report.bytes_reconciled == len("quarterly numbers\n")
        assert (mirror_dir / "docs" / "report.txt").read_text() == "quarterly numbers\n"

        again = RepairEngine(mirror).repair(source_tree, LocalEndpoint(config={"path": mirror_dir}))
        assert again.healthy

    def test_missing_mirror(self, mirror, source_tree, tmp_path):
        with pytest.raises(__util__.VaultError, match="No mirror found"):
            RepairEngine(mirror).repair(source_tree, LocalEndpoint(config={"path": tmp_path / "nope"}))
        assert mirror.requests == []

    def test_unreachable_target(self, mirror, source_tree, mirror_dir):
        target = LocalEndpoint(config={"path": mirror_dir})
        target.check_reachable = mock.Mock(side_effect=__util__.RemoteUnreachableError("timeout"))
        with pytest.raises(__util__.RemoteUnreachableError):
            RepairEngine(mirror).repair(source_tree, target)
        assert len(mirror.requests) == 1

    def test_transfer_failure(self, mirror, source_tree, mirror_dir):
        mirror.fail_with = 12
        with pytest.raises(__util__.TransferFailedError) as excinfo:
            RepairEngine(mirror).repair(source_tree, LocalEndpoint(config={"path": mirror_dir}))
        assert excinfo.value.exit_code == 12

    def test_options_passed_through(self, mirror, source_tree, mirror_dir):
        engine = RepairEngine(mirror, bandwidth_limit=500, io_timeout=60, preserve_acls_xattrs=False)
        engine.repair(source_tree, LocalEndpoint(config={"path": mirror_dir}))
        request = mirror.requests[-1]
        assert request.bandwidth_limit == 500
        assert request.io_timeout == 60
        assert request.preserve_acls_xattrs is False
        assert request.rsh is None


class TestRepairReport:
    def test_duration(self):
        report = RepairReport(target="x", started_at=100.0, completed_at=102.5)
        assert report.duration == 2.5
