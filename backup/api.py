"""Public API for backup operations."""
from __future__ import annotations

import contextlib
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from core.db import connect as db_connect
from core.paths import human_size
from core.process import CommandRunner

from .catalog import BackupCatalog
from .chain import ChainResolver
from .config import BackupConfig
from .create import capture
from .errors import BackupError
from .lock import LockCoordinator
from .logs import BackupLogger
from .notify import Notifier
from .pitr import PITRCoordinator
from .prepare import PrepareEngine
from .report import write_report
from .restore import RestoreCoordinator, console_confirm
from .retention import apply_retention
from .schedule import install_schedule
from .server import ServerController
from .tools import ToolCommands, check_engine, check_server, credentials_file
from .types import (
    BackupEntry,
    CaptureResult,
    Chain,
    EntryKind,
    PitrResult,
    RestoreResult,
    RetentionSummary,
)
from .verify import verify_entry

_KIND_BY_TYPE = {"full": EntryKind.FULL, "incremental": EntryKind.INCREMENTAL, "binlog": EntryKind.BINLOG_SET}
_KIND_LABEL = {EntryKind.FULL: "Full", EntryKind.INCREMENTAL: "Incremental", EntryKind.BINLOG_SET: "Binary log"}


class _FailureNotice(contextlib.AbstractContextManager):
    """Send one ``ERROR:`` notification for a backup or filesystem failure, then re-raise.

    Guards nest (the CLI wraps the service calls), so a failure that was
    already announced is passed through untouched.
    """

    def __init__(self, notifier: Notifier, logger: BackupLogger, phase: str) -> None:
        self._notifier = notifier
        self._logger = logger
        self._phase = phase

    def __exit__(self, exc_type, exc, tb) -> bool:
        if isinstance(exc, (BackupError, OSError)) and not getattr(exc, "notified", False):
            exc.notified = True
            self._logger.event(event="operation_failed", phase=self._phase, ok=False, error=str(exc))
            self._notifier.send(f"ERROR: {exc}")
        return False


class BackupService:
    """Coordinate capture, restore, point-in-time recovery and retention."""

    def __init__(
        self,
        config: BackupConfig,
        *,
        runner: Optional[CommandRunner] = None,
        connect: Callable[[Mapping[str, Any]], Any] = db_connect,
        notifier: Optional[Notifier] = None,
        server: Optional[ServerController] = None,
        confirm: Callable[[str], bool] = console_confirm,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._runner = runner or CommandRunner()
        self._connect = connect
        self._clock = clock
        self._logger = BackupLogger(None if config.dry_run else config.backup_dir)
        self._catalog = BackupCatalog(config.backup_dir)
        self._notifier = notifier or Notifier(config.notifications, self._runner)
        self._resolver = ChainResolver(self._catalog)
        self._prepare = PrepareEngine(config, self._catalog, self._runner, logger=self._logger)
        self._restore = RestoreCoordinator(
            config,
            self._catalog,
            self._runner,
            logger=self._logger,
            server=server or ServerController(self._runner, config.connection.service),
            confirm=confirm,
        )
        self._pitr = PITRCoordinator(
            config,
            self._catalog,
            self._runner,
            logger=self._logger,
            resolver=self._resolver,
            prepare=self._prepare,
            restore=self._restore,
        )

    # ------------------------------------------------------------------
    @property
    def config(self) -> BackupConfig:
        return self._config

    @property
    def catalog(self) -> BackupCatalog:
        return self._catalog

    def guard(self, phase: str) -> _FailureNotice:
        return _FailureNotice(self._notifier, self._logger, phase)

    def _lock_coordinator(self) -> Optional[LockCoordinator]:
        capture_options = self._config.capture
        if not capture_options.use_read_lock:
            return None
        return LockCoordinator(
            self._config.connection.connect_kwargs(),
            wait_timeout_s=capture_options.lock_wait_timeout_s,
            grace_s=capture_options.lock_grace_s,
            connect=self._connect,
        )

    def preflight(self) -> str:
        """Confirm the backup engine is installed; return its version line."""

        with self.guard("preflight"):
            version = check_engine(self._runner, self._config)
        self._logger.info("engine_version", version=version)
        return version

    # ------------------------------------------------------------------
    def list_entries(self, kind: Optional[EntryKind] = None) -> List[BackupEntry]:
        self._catalog.refresh()
        return self._catalog.list(kind)

    def capture(self, backup_type: Optional[str] = None) -> CaptureResult:
        """Capture one entry, then prune and refresh the report."""

        kind = _KIND_BY_TYPE[backup_type or self._config.backup_type]
        with self.guard("capture"):
            check_server(self._runner, self._config)
            result = capture(
                kind,
                config=self._config,
                catalog=self._catalog,
                runner=self._runner,
                logger=self._logger,
                lock=self._lock_coordinator() if kind != EntryKind.BINLOG_SET else None,
                connect=self._connect,
                clock=self._clock,
            )
        if result.dry_run:
            return result

        entry = result.entry
        label = _KIND_LABEL[entry.kind]
        if result.warnings and entry.kind == EntryKind.BINLOG_SET:
            self._notifier.send(f"{label} backup completed with warnings: {entry.path} ({len(entry.segments)} logs)")
        elif entry.kind == EntryKind.BINLOG_SET:
            self._notifier.send(f"{label} backup completed successfully: {entry.path} ({len(entry.segments)} logs)")
        else:
            self._notifier.send(f"{label} backup completed successfully: {entry.path} ({human_size(entry.size_bytes)})")

        self.apply_retention()
        self.write_report()
        return result

    def verify(self, reference: str) -> dict:
        entry = self._catalog.find(reference)
        with self.guard("verify"), credentials_file(self._config) as creds:
            return verify_entry(
                entry,
                logger=self._logger,
                runner=self._runner,
                commands=ToolCommands(self._config, creds),
                test_recovery=self._config.capture.test_recovery,
                temp_dir=self._config.temp_dir,
            )

    def resolve(self, reference: str) -> Chain:
        return self._resolver.resolve(self._catalog.find(reference).id)

    def restore(self, reference: str, *, force: Optional[bool] = None) -> RestoreResult:
        with self.guard("restore"):
            chain = self.resolve(reference)
            self._prepare.run(chain)
            result = self._restore.restore(chain, force=force)
        if not result.dry_run:
            self._notifier.send(f"Backup restoration completed successfully from: {chain.full.path}")
        return result

    def pitr(
        self,
        target_time: datetime,
        *,
        reference: Optional[str] = None,
        pitr_only: bool = False,
        force: Optional[bool] = None,
    ) -> PitrResult:
        with self.guard("pitr"):
            backup_id = self._catalog.find(reference).id if reference else None
            result = self._pitr.recover(target_time, backup_id=backup_id, pitr_only=pitr_only, force=force)
        if not result.dry_run:
            self._notifier.send(f"PITR completed successfully to: {target_time.strftime('%Y-%m-%d %H:%M:%S')}")
        return result

    def apply_retention(self) -> RetentionSummary:
        with self.guard("retention"):
            return apply_retention(
                self._catalog,
                self._config.retention,
                logger=self._logger,
                now=self._clock(),
                dry_run=self._config.dry_run,
            )

    def write_report(self) -> Optional[Path]:
        if self._config.dry_run:
            return None
        with self.guard("report"):
            path = write_report(self._catalog, now=self._clock())
        self._logger.info("report_written", path=str(path))
        self._notifier.send_report(path)
        return path

    def setup_schedule(self, *, program: str, config_file: Optional[Path] = None) -> List[str]:
        with self.guard("schedule"):
            return install_schedule(
                self._config,
                self._runner,
                program=program,
                config_file=config_file,
                dry_run=self._config.dry_run,
            )


__all__ = ["BackupError", "BackupService"]
