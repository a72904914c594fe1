from datetime import datetime, timedelta

import pytest

from backup.errors import NoBinlogSet, PITRFailed
from backup.pitr import SUPPRESS_BINLOG_DIRECTIVE, PITRCoordinator, error_line
from backup.restore import RestoreCoordinator
from backup.types import EntryKind, EntryState, PointerSlot
from core.process import CommandResult

from conftest import FakeServer

T0 = datetime(2025, 3, 4, 12, 0, 0)
TARGET = datetime(2025, 3, 4, 15, 30, 0)

DECODED = {
    "mysql-bin.000041": "# at 4\nBEGIN\n/*!*/;\nINSERT INTO t VALUES (1)\n/*!*/;\nCOMMIT/*!*/;\n",
    "mysql-bin.000042": "# at 4\nBEGIN\nUPDATE t SET v = 2\nCOMMIT/*!*/;\n",
}


def _decoder(outputs):
    def handler(call):
        segment = call.command.args[-1].rsplit("/", 1)[-1]
        with open(call.stdout_path, "a", encoding="utf-8") as handle:
            handle.write(outputs.get(segment, "# no events\n"))
        return None

    return handler


def _coordinator(config, catalog, runner, logger, server=None):
    restore = RestoreCoordinator(config, catalog, runner, logger=logger, server=server or FakeServer())
    return PITRCoordinator(config, catalog, runner, logger=logger, restore=restore)


def _seed_backup_and_logs(catalog, seed, *, binlog_at=None, position_file="mysql-bin.000041"):
    full = seed(EntryKind.FULL, T0)
    catalog.set_pointer(PointerSlot.LAST_FULL, full.id)
    catalog.set_pointer(PointerSlot.LAST_INCREMENTAL, full.id)
    (full.path / "xtrabackup_binlog_info").write_text(f"{position_file}\t328\t0-1-100\n", encoding="utf-8")
    binlogs = seed(
        EntryKind.BINLOG_SET,
        binlog_at or T0 + timedelta(hours=4),
        segments=["mysql-bin.000042", "mysql-bin.000041"],
    )
    return full, binlogs


def test_restore_then_replay_in_segment_order(config, catalog, seed, runner, logger):
    full, _ = _seed_backup_and_logs(catalog, seed)
    replayed = {}

    def capture_stdin(call):
        replayed["text"] = call.stdin_path.read_text(encoding="utf-8")
        return None

    runner.on("binlog-reader", _decoder(DECODED)).on("sql-client", capture_stdin)
    server = FakeServer()

    result = _coordinator(config, catalog, runner, logger, server).recover(TARGET, backup_id=full.id, force=True)

    assert result.replayed is True
    assert result.segments == ["mysql-bin.000041", "mysql-bin.000042"]
    assert result.statement_count == 6
    assert result.restore is not None and server.calls == ["stop", "start", "wait_healthy"]
    readers = runner.labelled("binlog-reader")
    assert [call.command.args[0] for call in readers] == ["--stop-datetime=2025-03-04 15:30:00"] * 2
    text = replayed["text"]
    assert text.startswith(SUPPRESS_BINLOG_DIRECTIVE + "\n")
    assert text.index("INSERT INTO t") < text.index("UPDATE t SET")
    assert runner.labels()[-1] == "sql-client"
    assert not result.replay_file.exists()


def test_empty_replay_is_a_successful_no_op(config, catalog, seed, runner, logger):
    _seed_backup_and_logs(catalog, seed)
    runner.on("binlog-reader", _decoder({}))

    result = _coordinator(config, catalog, runner, logger).recover(T0 - timedelta(days=1), pitr_only=True)

    assert result.statement_count == 0
    assert result.replayed is False
    assert runner.labelled("sql-client") == []
    assert runner.labelled("copy-back") == []


def test_grant_only_window_is_still_replayed(config, catalog, seed, runner, logger):
    _seed_backup_and_logs(catalog, seed)
    grant = "# at 4\nGRANT SELECT ON db.* TO 'app'@'%'\n/*!*/;\n"
    runner.on("binlog-reader", _decoder({"mysql-bin.000041": grant}))
    replayed = []
    runner.on("sql-client", lambda call: replayed.append(call.stdin_path.read_text(encoding="utf-8")))

    result = _coordinator(config, catalog, runner, logger).recover(TARGET, pitr_only=True)

    assert result.statement_count == 0
    assert result.replayed is True
    assert len(runner.labelled("sql-client")) == 1
    assert "GRANT SELECT ON db.*" in replayed[0]


def test_decoder_bookkeeping_alone_is_not_replayed(config, catalog, seed, runner, logger):
    _seed_backup_and_logs(catalog, seed)
    header_only = (
        "/*!50530 SET @@SESSION.PSEUDO_SLAVE_MODE=1*/;\n"
        "DELIMITER /*!*/;\n"
        "# at 4\n"
        "#250304 12:00:00 server id 1  end_log_pos 256 CRC32 0x0d1a2b3c \tStart: binlog v 4, server v 10.11.6\n"
        "ROLLBACK/*!*/;\n"
        "BINLOG '\n"
        "fAbmZw8BAAAA/AAAAAABAAAAAAQAMTAuMTEuNi1NYXJpYURCAAAAAAAAAAAAAAAAAAAAAAAAAAAA\n"
        "'/*!*/;\n"
        "# at 256\n"
        "#250304 12:00:00 server id 1  end_log_pos 285 CRC32 0x1a2b3c4d \tGtid list []\n"
        "# End of log file\n"
        "ROLLBACK /* added by mysqlbinlog */;\n"
        "/*!50003 SET COMPLETION_TYPE=@OLD_COMPLETION_TYPE*/;\n"
        "/*!50530 SET @@SESSION.PSEUDO_SLAVE_MODE=0*/;\n"
    )
    runner.on("binlog-reader", _decoder({"mysql-bin.000041": header_only, "mysql-bin.000042": header_only}))

    result = _coordinator(config, catalog, runner, logger).recover(TARGET, pitr_only=True)

    assert result.replayed is False
    assert runner.labelled("sql-client") == []


def test_unverified_binlog_set_is_passed_over(config, catalog, seed, runner, logger):
    _, verified = _seed_backup_and_logs(catalog, seed)
    pending = seed(
        EntryKind.BINLOG_SET,
        T0 + timedelta(hours=5),
        segments=["mysql-bin.000043"],
        state=EntryState.CAPTURED,
    )
    runner.on("binlog-reader", _decoder(DECODED))

    result = _coordinator(config, catalog, runner, logger).recover(TARGET, pitr_only=True)

    assert result.binlog_set.id == verified.id
    assert result.segments == ["mysql-bin.000041", "mysql-bin.000042"]
    skipped = [item for item in logger.events if item[1] == "pitr_binlog_set_skipped"]
    assert skipped and skipped[0][2]["entry"] == pending.id


def test_only_unverified_binlog_sets_fail(config, catalog, seed, runner, logger):
    seed(EntryKind.FULL, T0)
    seed(EntryKind.BINLOG_SET, T0 + timedelta(hours=1), segments=["mysql-bin.000041"], state=EntryState.CAPTURED)

    with pytest.raises(NoBinlogSet):
        _coordinator(config, catalog, runner, logger).recover(TARGET, pitr_only=True)


def test_missing_binlog_set_fails(config, catalog, seed, runner, logger):
    seed(EntryKind.FULL, T0)
    with pytest.raises(NoBinlogSet):
        _coordinator(config, catalog, runner, logger).recover(TARGET, pitr_only=True)


def test_decoder_failure_names_segment(config, catalog, seed, runner, logger):
    _seed_backup_and_logs(catalog, seed)
    runner.fail("binlog-reader", stderr="corrupt event")

    with pytest.raises(PITRFailed) as excinfo:
        _coordinator(config, catalog, runner, logger).recover(TARGET, pitr_only=True)

    assert excinfo.value.segment == "mysql-bin.000041"
    assert list(config.temp_dir.glob("pitr_replay_*")) == []


def test_replay_failure_reports_line(config, catalog, seed, runner, logger):
    _seed_backup_and_logs(catalog, seed)
    runner.on("binlog-reader", _decoder(DECODED))
    runner.on(
        "sql-client",
        lambda call: CommandResult(call.command, 1, stderr="ERROR 1146 (42S02) at line 7: Table 't' doesn't exist"),
    )

    with pytest.raises(PITRFailed) as excinfo:
        _coordinator(config, catalog, runner, logger).recover(TARGET, pitr_only=True)

    assert excinfo.value.line == 7


def test_coverage_gap_is_a_warning_by_default(config, catalog, seed, runner, logger):
    full, _ = _seed_backup_and_logs(catalog, seed, position_file="mysql-bin.000039")
    runner.on("binlog-reader", _decoder({}))

    result = _coordinator(config, catalog, runner, logger).recover(TARGET, backup_id=full.id, pitr_only=True)

    assert any("starts at mysql-bin.000041" in warning for warning in result.warnings)
    assert "pitr_coverage_gap" in logger.names()


def test_coverage_gap_is_fatal_when_strict(make_config, catalog, seed, runner, logger):
    config = make_config({"pitr.strict_coverage": True})
    full, _ = _seed_backup_and_logs(catalog, seed, binlog_at=T0 - timedelta(hours=1))

    with pytest.raises(PITRFailed):
        _coordinator(config, catalog, runner, logger).recover(TARGET, backup_id=full.id, pitr_only=True)
    assert runner.labelled("binlog-reader") == []


def test_replay_file_is_private(config, catalog, seed, runner, logger):
    _seed_backup_and_logs(catalog, seed)
    runner.on("binlog-reader", _decoder(DECODED))
    modes = []
    runner.on("sql-client", lambda call: modes.append(call.stdin_path.stat().st_mode & 0o777))

    _coordinator(config, catalog, runner, logger).recover(TARGET, pitr_only=True)

    assert modes == [0o600]


def test_error_line_parsing():
    assert error_line("ERROR 1064 (42000) at line 12: syntax") == 12
    assert error_line("connection refused") is None
