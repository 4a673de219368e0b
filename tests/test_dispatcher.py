"""Tests for the CLI dispatcher and the commands it routes to."""

from unittest import mock

import pytest

from home_vault import __version__
from home_vault.cli.dispatcher import create_subcommand_parser, main


@pytest.fixture
def cli_config(tmp_path, source_tree):
    """A config file pointing at directories under tmp_path."""
    path = tmp_path / "config" / "config.toml"
    path.parent.mkdir()
    path.write_text(
        f"""
[vault]
source = "{source_tree}"
log_dir = "{tmp_path / 'logs'}"
min_free_percent = 0
notifications = false
exclude = ["*.iso"]

[vault.retention]
days = 30

[local]
path = "{tmp_path / 'backup'}"
preserve_acls_xattrs = false
"""
    )
    return path


@pytest.fixture
def fake_rsync(mirror):
    with mock.patch("home_vault.core.operations.RsyncTransfer", return_value=mirror):
        yield mirror


class TestParser:
    def test_run_defaults(self):
        args = create_subcommand_parser().parse_args(["run"])
        assert args.command == "run"
        assert args.target == "all"
        assert args.unattended is False

    def test_run_cron(self):
        args = create_subcommand_parser().parse_args(["-c", "x.toml", "run", "-t", "local", "--cron"])
        assert args.config == "x.toml"
        assert args.target == "local"
        assert args.unattended is True

    def test_invalid_target(self):
        with pytest.raises(SystemExit):
            create_subcommand_parser().parse_args(["run", "--target", "cloud"])

    def test_prune_flags(self):
        args = create_subcommand_parser().parse_args(["prune", "--dry-run", "--snapshots"])
        assert args.dry_run is True
        assert args.snapshots is True

    def test_snapshot_actions(self):
        args = create_subcommand_parser().parse_args(["snapshot", "prune", "--dry-run"])
        assert args.snapshot_action == "prune"
        assert args.dry_run is True

    def test_restore_defaults(self):
        args = create_subcommand_parser().parse_args(["restore"])
        assert args.source == "local"
        assert args.version_id is None
        assert args.destination is None
        assert args.yes is False
        assert args.version is False

    def test_restore_options(self):
        args = create_subcommand_parser().parse_args(
            ["restore", "--from", "remote", "--to", "/tmp/r", "-y", "--dry-run", "--cron"]
        )
        assert (args.source, args.destination) == ("remote", "/tmp/r")
        assert args.yes and args.dry_run and args.unattended


class TestMain:
    def test_version(self, capsys):
        assert main(["--version"]) == 0
        assert __version__ in capsys.readouterr().out

    def test_no_command(self, capsys):
        assert main([]) == 1
        assert "No command specified" in capsys.readouterr().out

    def test_missing_config(self, tmp_path):
        assert main(["-c", str(tmp_path / "missing.toml"), "status"]) == 1

    def test_snapshot_without_action(self, capsys):
        assert main(["snapshot"]) == 1
        assert "Usage" in capsys.readouterr().out


class TestConfigCommand:
    def test_init_to_file(self, tmp_path, capsys):
        output = tmp_path / "generated.toml"
        assert main(["config", "init", "-o", str(output)]) == 0
        assert "[vault]" in output.read_text()

    def test_generated_config_validates(self, tmp_path, capsys):
        output = tmp_path / "generated.toml"
        main(["config", "init", "-o", str(output)])
        assert main(["-c", str(output), "config", "validate"]) == 0
        assert "Configuration is valid" in capsys.readouterr().out

    def test_validate(self, cli_config, capsys):
        assert main(["-c", str(cli_config), "config", "validate"]) == 0
        out = capsys.readouterr().out
        assert "Retention: 30 days" in out
        assert "Remote: not configured" in out

    def test_validate_invalid(self, tmp_path, capsys):
        path = tmp_path / "bad.toml"
        path.write_text("[vault\n")
        assert main(["-c", str(path), "config", "validate"]) == 1
        assert "Configuration error" in capsys.readouterr().out


class TestExclusionsCommand:
    def test_lists_patterns(self, cli_config, capsys):
        assert main(["-c", str(cli_config), "exclusions"]) == 0
        out = capsys.readouterr().out
        assert "*.iso" in out
        assert " * .home-vault/" in out


class TestBackupCommands:
    def test_run_then_status(self, cli_config, tmp_path, fake_rsync, capsys):
        assert main(["-c", str(cli_config), "run", "--unattended"]) == 0
        versions = list((tmp_path / "backup" / "incremental").iterdir())
        assert any(v.is_dir() for v in versions)
        assert (tmp_path / "backup" / "current").is_symlink()
        assert (tmp_path / "logs" / "transactions.jsonl").exists()

        assert main(["-c", str(cli_config), "status"]) == 0
        out = capsys.readouterr().out
        assert "Versions: 1 (0 pending, 1 complete, 0 failed)" in out
        assert "Overall: healthy" in out

    def test_run_failure_exit_code(self, cli_config, fake_rsync):
        fake_rsync.fail_with = 23
        assert main(["-c", str(cli_config), "run", "--unattended"]) == 1

    def test_run_refused_while_locked(self, cli_config, tmp_path, fake_rsync):
        from filelock import FileLock

        lock = FileLock(str(tmp_path / "logs" / "home-vault.lock"))
        (tmp_path / "logs").mkdir(exist_ok=True)
        with lock:
            assert main(["-c", str(cli_config), "run", "--unattended"]) == 1
        assert fake_rsync.requests == []

    def test_prune_dry_run(self, cli_config, fake_rsync, capsys):
        main(["-c", str(cli_config), "run", "--unattended"])
        assert main(["-c", str(cli_config), "prune", "--dry-run"]) == 0
        assert "Would delete 0 versions" in capsys.readouterr().out

    def test_snapshot_list_without_zfs(self, cli_config):
        assert main(["-c", str(cli_config), "snapshot", "list"]) == 1

    def test_repair_without_remote(self, cli_config):
        assert main(["-c", str(cli_config), "repair", "--unattended"]) == 1


class TestRestoreCommand:
    def test_list_marks_current(self, cli_config, fake_rsync, capsys):
        main(["-c", str(cli_config), "run", "--unattended"])
        assert main(["-c", str(cli_config), "restore", "--list"]) == 0
        assert "(current)" in capsys.readouterr().out

    def test_dry_run(self, cli_config, source_tree, fake_rsync, capsys):
        main(["-c", str(cli_config), "run", "--unattended"])
        (source_tree / "notes.md").unlink()

        assert main(["-c", str(cli_config), "restore", "--dry-run", "--unattended"]) == 0
        assert "Would restore 1 file(s)" in capsys.readouterr().out
        assert not (source_tree / "notes.md").exists()

    def test_unattended_needs_yes(self, cli_config, source_tree, fake_rsync, capsys):
        main(["-c", str(cli_config), "run", "--unattended"])
        (source_tree / "notes.md").unlink()

        assert main(["-c", str(cli_config), "restore", "--unattended"]) == 1
        assert "pass --yes" in capsys.readouterr().out
        assert not (source_tree / "notes.md").exists()

    def test_restore_with_yes(self, cli_config, source_tree, fake_rsync, capsys):
        main(["-c", str(cli_config), "run", "--unattended"])
        (source_tree / "notes.md").unlink()

        assert main(["-c", str(cli_config), "restore", "--unattended", "--yes"]) == 0
        out = capsys.readouterr().out
        assert "Restored 1 file(s)" in out
        assert "Previous contents saved to" in out
        assert (source_tree / "notes.md").read_text() == "# notes\n"

    def test_unknown_version_id(self, cli_config, fake_rsync, capsys):
        main(["-c", str(cli_config), "run", "--unattended"])
        assert main(["-c", str(cli_config), "restore", "--version-id", "nope", "--yes"]) == 1
        assert __version__ not in capsys.readouterr().out
