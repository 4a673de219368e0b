"""Tests for the restore engine."""

import os
import stat
from datetime import datetime
from pathlib import Path
from unittest import mock

import pytest

from home_vault import __util__
from home_vault.core.exclusions import ExclusionSet
from home_vault.core.restore import RestoreEngine, fix_permissions, safety_copy_path
from home_vault.core.transfer import TransferRequest
from home_vault.endpoint import LocalEndpoint

CACHE_ONLY = ExclusionSet([".cache/"])


@pytest.fixture
def backup_dir(tmp_path, source_tree, mirror):
    target = tmp_path / "backup" / "v1"
    mirror.transfer(TransferRequest(source=source_tree, destination=str(target), exclusions=CACHE_ONLY))
    return LocalEndpoint(config={"path": target})


@pytest.fixture
def home(tmp_path):
    """A home directory that drifted away from the backup."""
    home = tmp_path / "restore" / "alice"
    (home / "docs").mkdir(parents=True)
    (home / "docs" / "report.txt").write_text("draft\n")
    (home / "scratch.txt").write_text("temporary\n")
    (home / ".cache").mkdir()
    (home / ".cache" / "big.bin").write_bytes(b"x" * 10)
    return home


@pytest.fixture
def engine(mirror, clock):
    return RestoreEngine(mirror, exclusions=CACHE_ONLY, clock=clock)


class TestRestore:
    def test_destination_matches_backup(self, engine, mirror, backup_dir, home):
        report = engine.restore(backup_dir, home)

        assert (home / "docs" / "report.txt").read_text() == "quarterly numbers\n"
        assert (home / "notes.md").read_text() == "# notes\n"
        assert not (home / "scratch.txt").exists()
        assert sorted(report.files_restored) == ["docs/report.txt", "notes.md"]
        assert mirror.requests[-1].delete_excluded is False

    def test_excluded_paths_untouched(self, engine, backup_dir, home):
        engine.restore(backup_dir, home)
        assert (home / ".cache" / "big.bin").read_bytes() == b"x" * 10

    def test_safety_copy_keeps_previous_contents(self, engine, backup_dir, home, tmp_path):
        report = engine.restore(backup_dir, home)

        assert report.safety_copy == tmp_path / "restore" / "alice_backup_before_restore_20240601_120000"
        assert (report.safety_copy / "scratch.txt").read_text() == "temporary\n"
        assert (report.safety_copy / "docs" / "report.txt").read_text() == "draft\n"

    def test_dry_run_changes_nothing(self, engine, mirror, backup_dir, home, tmp_path):
        report = engine.restore(backup_dir, home, dry_run=True)

        assert report.dry_run
        assert report.safety_copy is None
        assert sorted(report.files_restored) == ["docs/report.txt", "notes.md"]
        assert (home / "scratch.txt").exists()
        assert (home / "docs" / "report.txt").read_text() == "draft\n"
        assert mirror.requests[-1].dry_run is True
        assert sorted(p.name for p in (tmp_path / "restore").iterdir()) == ["alice"]

    def test_empty_destination_needs_no_safety_copy(self, engine, backup_dir, tmp_path):
        fresh = tmp_path / "fresh"
        report = engine.restore(backup_dir, fresh)

        assert report.safety_copy is None
        assert (fresh / "notes.md").exists()

    def test_missing_backup(self, engine, mirror, home, tmp_path):
        with pytest.raises(__util__.VaultError, match="No backup found"):
            engine.restore(LocalEndpoint(config={"path": tmp_path / "nope"}), home)
        assert mirror.requests == []
        assert (home / "scratch.txt").exists()

    def test_unreachable_source(self, engine, mirror, backup_dir, home):
        backup_dir.check_reachable = mock.Mock(side_effect=__util__.RemoteUnreachableError("timeout"))
        with pytest.raises(__util__.RemoteUnreachableError):
            engine.restore(backup_dir, home)
        assert len(mirror.requests) == 1

    def test_transfer_failure(self, engine, mirror, backup_dir, home):
        mirror.fail_with = 23
        with pytest.raises(__util__.TransferFailedError) as excinfo:
            engine.restore(backup_dir, home)
        assert excinfo.value.exit_code == 23


class TestSafetyCopy:
    def test_failure_aborts_without_confirmation(self, engine, mirror, backup_dir, home):
        with mock.patch("home_vault.core.restore.shutil.copytree", side_effect=OSError("disk full")):
            with pytest.raises(__util__.VaultError, match="Safety copy"):
                engine.restore(backup_dir, home)
        assert len(mirror.requests) == 1

    def test_failure_confirmed(self, mirror, backup_dir, home, clock):
        engine = RestoreEngine(mirror, exclusions=CACHE_ONLY, clock=clock, confirm=lambda _: True)
        with mock.patch("home_vault.core.restore.shutil.copytree", side_effect=OSError("disk full")):
            report = engine.restore(backup_dir, home)
        assert report.safety_copy is None
        assert (home / "notes.md").exists()

    def test_copy_path(self):
        when = datetime(2024, 6, 1, 9, 5, 3)
        assert safety_copy_path(Path("/home/alice"), when) == Path(
            "/home/alice_backup_before_restore_20240601_090503"
        )


class TestFixPermissions:
    def test_ssh_directory_locked_down(self, home):
        ssh = home / ".ssh"
        ssh.mkdir(mode=0o755)
        key = ssh / "id_ed25519"
        key.write_text("secret\n")
        key.chmod(0o644)

        fix_permissions(home)

        assert stat.S_IMODE(ssh.stat().st_mode) == 0o700
        assert stat.S_IMODE(key.stat().st_mode) == 0o600

    def test_ownership_follows_destination_as_root(self, home):
        st = home.stat()
        with mock.patch("os.geteuid", return_value=0), mock.patch("os.chown") as chown:
            fix_permissions(home)

        chowned = {call.args[0] for call in chown.call_args_list}
        assert os.path.join(home, "docs", "report.txt") in chowned
        assert all(call.args[1:3] == (st.st_uid, st.st_gid) for call in chown.call_args_list)

    def test_ownership_untouched_as_user(self, home):
        with mock.patch("os.geteuid", return_value=1000), mock.patch("os.chown") as chown:
            fix_permissions(home)
        chown.assert_not_called()
