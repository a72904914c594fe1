from datetime import datetime
from pathlib import Path

import pytest

from backup.errors import ConfigInvalid, ToolInvocationFailed
from backup.server import ServerController
from backup.tools import ToolCommands, check_engine, check_server, credentials_file, run_checked
from core.process import Command, CommandResult

from conftest import option


def test_credentials_file_is_private_and_removed(make_config):
    config = make_config({"mysql.user": "backup", "mysql.password": 'pa"ss'})

    with credentials_file(config) as path:
        assert path.parent == config.temp_dir
        assert path.stat().st_mode & 0o777 == 0o600
        assert path.read_text(encoding="utf-8") == '[client]\nuser=backup\npassword="pa\\"ss"\n'
    assert not path.exists()


def test_defaults_file_replaces_generated_credentials(make_config, tmp_path):
    defaults = tmp_path / "my.cnf"
    defaults.write_text("[client]\nuser=backup\n", encoding="utf-8")
    config = make_config({"mysql.defaults_file": str(defaults)})

    with credentials_file(config) as path:
        assert path is None
        command = ToolCommands(config, path).backup(tmp_path / "full")

    assert command.args[0] == f"--defaults-file={defaults}"


def test_option_file_argument_comes_first(config, tmp_path):
    creds = tmp_path / "creds.cnf"
    commands = ToolCommands(config, creds)

    backup = commands.backup(tmp_path / "incr", base_dir=tmp_path / "full")
    assert backup.program == "mariabackup"
    assert backup.args[0] == f"--defaults-extra-file={creds}"
    assert option(backup, "incremental-basedir") == str(tmp_path / "full")

    client = commands.sql_client()
    assert client.program == "mysql"
    assert client.args[0] == f"--defaults-extra-file={creds}"


def test_prepare_and_copy_back_arguments(config, tmp_path):
    commands = ToolCommands(config)

    prepare = commands.prepare(tmp_path / "full", incremental_dir=tmp_path / "incr", apply_log_only=True)
    assert prepare.args[:3] == ("--prepare", f"--target-dir={tmp_path / 'full'}", f"--incremental-dir={tmp_path / 'incr'}")
    assert "--apply-log-only" in prepare.args

    copy_back = commands.copy_back(tmp_path / "full", Path("/var/lib/mysql"))
    assert "--copy-back" in copy_back.args
    assert option(copy_back, "datadir") == "/var/lib/mysql"


def test_decompress_decrypts_before_decompressing(make_config, tmp_path):
    key = tmp_path / "k"
    key.write_text("k", encoding="utf-8")
    config = make_config({"capture.encrypt": True, "capture.encrypt_key_file": str(key)})

    command = ToolCommands(config).decompress(tmp_path / "full", compressed=True, encrypted=True)

    assert command.args.index("--decrypt=AES256") < command.args.index("--decompress")


@pytest.mark.parametrize("level, nice, ionice", [(1, "18", "-n1"), (7, "6", "-n7"), (10, "0", "-n7")])
def test_throttle_prefix(make_config, tmp_path, level, nice, ionice):
    command = ToolCommands(make_config({"capture.throttle_io": level})).prepare(tmp_path)
    assert command.prefix == ("nice", "-n", nice, "ionice", "-c2", ionice)
    assert command.argv[:6] == list(command.prefix)


def test_binlog_reader_stops_at_target(config, tmp_path):
    command = ToolCommands(config).binlog_reader(tmp_path / "mysql-bin.000001", datetime(2025, 3, 4, 15, 30))
    assert command.args == ("--stop-datetime=2025-03-04 15:30:00", str(tmp_path / "mysql-bin.000001"))


def test_run_checked_raises_with_stderr_tail(runner):
    runner.fail("backup", returncode=2, stderr="line1\nline2")
    with pytest.raises(ToolInvocationFailed) as excinfo:
        run_checked(runner, Command("mariabackup", ("--backup",), label="backup"), what="backup failed")
    assert excinfo.value.returncode == 2
    assert str(excinfo.value) == "backup failed (exit 2): line1\nline2"


def test_display_redacts_secrets():
    command = Command("mariabackup", ("--password=hunter22", "--backup"))
    assert "hunter22" not in command.display()


# ----------------------------------------------------------------------
class FakeTime:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_wait_healthy_polls_until_active(runner):
    answers = iter([3, 3, 0])
    runner.on("service", lambda call: next(answers) if "is-active" in call.command.args else 0)
    clock = FakeTime()
    server = ServerController(runner, "mariadb", sleep=clock.sleep, monotonic=clock.monotonic)

    assert server.wait_healthy(30, 5) is True
    assert clock.sleeps == [5, 5]
    assert runner.calls[0].command.argv == ["systemctl", "is-active", "--quiet", "mariadb"]


def test_wait_healthy_gives_up_after_timeout(runner):
    runner.on("service", lambda call: 3)
    clock = FakeTime()
    server = ServerController(runner, "mariadb", sleep=clock.sleep, monotonic=clock.monotonic)

    assert server.wait_healthy(10, 5) is False
    assert clock.now == 10


def test_stop_and_start_report_failures(runner):
    runner.fail("service", stderr="Unit mariadb.service not found.")
    server = ServerController(runner, "mariadb")
    assert server.stop() is False
    assert server.start() is False
    assert [call.command.args for call in runner.calls] == [("stop", "mariadb"), ("start", "mariadb")]


# ----------------------------------------------------------------------
def test_check_engine_reports_the_banner(config, runner):
    banner = "mariabackup based on MariaDB server 10.11.6-MariaDB Linux (x86_64)\n"
    runner.on("version", lambda call: CommandResult(call.command, 0, stderr=banner))

    assert check_engine(runner, config).startswith("mariabackup based on MariaDB server 10.11.6")
    assert runner.calls[0].command.argv == ["mariabackup", "--version"]


def test_check_engine_rejects_a_missing_binary(config, runner):
    runner.fail("version", returncode=127, stderr="No such file or directory: 'mariabackup'")

    with pytest.raises(ConfigInvalid, match="not installed"):
        check_engine(runner, config)


def test_check_server_runs_select_one_with_private_credentials(config, runner):
    seen = []
    runner.on("ping", lambda call: seen.append(call.command.args[0]))

    check_server(runner, config)

    assert runner.calls[0].command.args[-2:] == ("-e", "SELECT 1")
    assert seen[0].startswith("--defaults-extra-file=")


def test_check_server_failure_is_a_configuration_error(config, runner):
    runner.fail("ping", stderr="ERROR 2002 (HY000): Can't connect to local server through socket")

    with pytest.raises(ConfigInvalid, match="not running"):
        check_server(runner, config)
