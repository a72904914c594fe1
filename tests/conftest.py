"""Shared fakes for the backup test-suite.

Nothing here talks to a real server or runs a real program: the command
runner simulates the backup engine on disk and the connection factory
serves canned query results.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from backup.catalog import BackupCatalog
from backup.config import build_config
from backup.types import BackupEntry, EntryKind, EntryState
from core.db import DatabaseError
from core.process import Command, CommandResult
from core.settings import apply_overrides, merge_defaults


# ----------------------------------------------------------------------
class StubLogger:
    def __init__(self) -> None:
        self.events = []

    def debug(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("debug", event, extra))

    def info(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("info", event, extra))

    def warning(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("warning", event, extra))

    def error(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("error", event, extra))

    def event(self, *, event: str, phase: str, ok: bool, **extra):  # pragma: no cover - recorder
        self.events.append(("event", event, phase, ok, extra))

    def names(self) -> List[str]:
        return [item[1] for item in self.events]


# ----------------------------------------------------------------------
def option(command: Command, name: str) -> Optional[str]:
    """Value of ``--name=value`` in *command*'s arguments."""

    prefix = f"--{name}="
    for arg in command.args:
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return None


def write_checkpoints(directory: Path, backup_type: str) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "xtrabackup_checkpoints").write_text(
        f"backup_type = {backup_type}\nfrom_lsn = 0\nto_lsn = 1000\n", encoding="utf-8"
    )


@dataclass
class RecordedCall:
    command: Command
    stdin_path: Optional[Path] = None
    stdout_path: Optional[Path] = None
    input_text: Optional[str] = None


def simulate_engine(call: RecordedCall) -> Optional[CommandResult]:
    """Mimic the on-disk effects of the backup engine."""

    command = call.command
    if command.label == "backup":
        target = Path(option(command, "target-dir"))
        incremental = option(command, "incremental-basedir") is not None
        write_checkpoints(target, "incremental" if incremental else "full-backuped")
        (target / "xtrabackup_info").write_text("tool_name = mariabackup\n", encoding="utf-8")
        (target / "ibdata1").write_bytes(b"\0" * 128)
    elif command.label == "prepare" and "--export" not in command.args:
        target = Path(option(command, "target-dir"))
        if (target / "xtrabackup_checkpoints").exists():
            state = "log-applied" if "--apply-log-only" in command.args else "full-prepared"
            write_checkpoints(target, state)
    return None


class FakeRunner:
    """Record commands; answer them through per-label handlers."""

    def __init__(self) -> None:
        self.calls: List[RecordedCall] = []
        self.handlers: Dict[str, Callable[[RecordedCall], Any]] = {}

    def on(self, label: str, handler: Callable[[RecordedCall], Any]) -> "FakeRunner":
        self.handlers[label] = handler
        return self

    def fail(self, label: str, returncode: int = 1, stderr: str = "boom") -> "FakeRunner":
        return self.on(label, lambda call: CommandResult(call.command, returncode, stderr=stderr))

    def run(self, command, *, stdin_path=None, stdout_path=None, input_text=None) -> CommandResult:
        call = RecordedCall(command, stdin_path, stdout_path, input_text)
        self.calls.append(call)
        handler = self.handlers.get(command.label, simulate_engine)
        result = handler(call)
        if result is None:
            return CommandResult(command, 0, stdout_path=stdout_path)
        if isinstance(result, int):
            return CommandResult(command, result, stdout_path=stdout_path)
        return result

    def labelled(self, label: str) -> List[RecordedCall]:
        return [call for call in self.calls if call.command.label == label]

    def labels(self) -> List[str]:
        return [call.command.label for call in self.calls]


# ----------------------------------------------------------------------
class FakeServerState:
    """Statements seen by every fake connection of one test."""

    def __init__(self, rows: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.rows = dict(rows or {})
        self.executed: List[str] = []
        self.errors: Dict[str, Exception] = {}
        self.block_lock = False
        self.killed = threading.Event()
        self.connections: List["FakeConnection"] = []


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn
        self._last: Optional[str] = None

    def execute(self, sql: str) -> None:
        state = self._conn.state
        state.executed.append(sql)
        self._last = sql
        if sql in state.errors:
            raise state.errors[sql]
        if sql.startswith("FLUSH TABLES WITH READ LOCK") and state.block_lock:
            state.killed.wait(5)
            self._conn.connected = False
            raise DatabaseError("Connection was killed")
        if sql.startswith("KILL"):
            state.killed.set()

    def fetchone(self):
        return self._conn.state.rows.get(self._last or "")

    def close(self) -> None:
        pass


class FakeConnection:
    def __init__(self, state: FakeServerState, connection_id: int) -> None:
        self.state = state
        self.connection_id = connection_id
        self.connected = True
        self.closed = False

    def cursor(self, **_kwargs) -> FakeCursor:
        return FakeCursor(self)

    def is_connected(self) -> bool:
        return self.connected

    def close(self) -> None:
        self.connected = False
        self.closed = True


class FakeConnector:
    def __init__(self, state: Optional[FakeServerState] = None) -> None:
        self.state = state or FakeServerState()
        self.params: List[Dict[str, Any]] = []

    def __call__(self, params) -> FakeConnection:
        self.params.append(dict(params))
        conn = FakeConnection(self.state, 100 + len(self.state.connections))
        self.state.connections.append(conn)
        return conn


class FakeServer:
    def __init__(self, *, stop_ok=True, start_ok=True, healthy=True) -> None:
        self.calls: List[str] = []
        self._stop_ok = stop_ok
        self._start_ok = start_ok
        self._healthy = healthy

    def stop(self) -> bool:
        self.calls.append("stop")
        return self._stop_ok

    def start(self) -> bool:
        self.calls.append("start")
        return self._start_ok

    def wait_healthy(self, timeout_s: float, interval_s: float) -> bool:
        self.calls.append("wait_healthy")
        return self._healthy


# ----------------------------------------------------------------------
@pytest.fixture
def logger() -> StubLogger:
    return StubLogger()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_config(tmp_path):
    def _make(overrides: Optional[Dict[str, Any]] = None):
        base = {
            "backup_dir": str(tmp_path / "backups"),
            "temp_dir": str(tmp_path / "tmp"),
            "mysql.datadir": str(tmp_path / "datadir"),
            "capture.min_disk_space_pct": 0,
            "capture.use_read_lock": False,
            "restore.health_timeout_s": 0,
        }
        base.update(overrides or {})
        return build_config(apply_overrides(merge_defaults({}), base))

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def catalog(config) -> BackupCatalog:
    config.backup_dir.mkdir(parents=True, exist_ok=True)
    return BackupCatalog(config.backup_dir)


@pytest.fixture
def seed(catalog):
    """Record an entry directly in the catalog, with a minimal engine payload."""

    prefixes = {EntryKind.FULL: "full_", EntryKind.INCREMENTAL: "incr_", EntryKind.BINLOG_SET: "binlogs_"}

    def _seed(
        kind: EntryKind,
        created: datetime,
        *,
        base_id: Optional[str] = None,
        state: EntryState = EntryState.VERIFIED,
        compressed: bool = False,
        encrypted: bool = False,
        segments=(),
        size_bytes: int = 0,
    ) -> BackupEntry:
        entry_id = f"{prefixes[kind]}{created:%Y%m%d%H%M%S}"
        path = catalog.backup_dir / entry_id
        if kind == EntryKind.BINLOG_SET:
            path.mkdir(parents=True, exist_ok=True)
            for name in segments:
                (path / name).write_text(f"-- {name}\n", encoding="utf-8")
        else:
            write_checkpoints(path, "full-backuped" if kind == EntryKind.FULL else "incremental")
            (path / "xtrabackup_info").write_text("tool_name = mariabackup\n", encoding="utf-8")
        entry = BackupEntry(
            id=entry_id,
            kind=kind,
            path=path,
            created_at=created,
            base_id=base_id,
            compressed=compressed,
            encrypted=encrypted,
            state=state,
            size_bytes=size_bytes,
            segments=tuple(segments),
        )
        catalog.record(entry)
        return entry

    return _seed
