"""Point-in-time recovery: restore, then replay archived binary logs up to a moment."""
from __future__ import annotations

import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from core.process import CommandRunner

from .binlog import count_statements, has_events, list_segments, read_backup_position
from .catalog import BackupCatalog
from .chain import ChainResolver
from .config import BackupConfig
from .errors import NoBinlogSet, NoFullBackup, PITRFailed
from .logs import BackupLogger
from .prepare import PrepareEngine
from .restore import RestoreCoordinator
from .tools import ToolCommands, credentials_file
from .types import BackupEntry, EntryKind, EntryState, PitrResult, PointerSlot

SUPPRESS_BINLOG_DIRECTIVE = "SET SQL_LOG_BIN=0;"

_ERROR_LINE_RE = re.compile(r"at line (\d+)")


def error_line(stderr: str) -> Optional[int]:
    """Return the replay line number the SQL client complained about, if any."""

    match = _ERROR_LINE_RE.search(stderr or "")
    return int(match.group(1)) if match else None


class PITRCoordinator:
    def __init__(
        self,
        config: BackupConfig,
        catalog: BackupCatalog,
        runner: CommandRunner,
        *,
        logger: BackupLogger,
        resolver: Optional[ChainResolver] = None,
        prepare: Optional[PrepareEngine] = None,
        restore: Optional[RestoreCoordinator] = None,
    ) -> None:
        self._config = config
        self._catalog = catalog
        self._runner = runner
        self._logger = logger
        self._resolver = resolver or ChainResolver(catalog)
        self._prepare = prepare or PrepareEngine(config, catalog, runner, logger=logger)
        self._restore = restore or RestoreCoordinator(config, catalog, runner, logger=logger)
        self._commands = ToolCommands(config)

    # ------------------------------------------------------------------
    def default_target(self) -> str:
        """Most recent verified capture: the last incremental, else the last full."""

        for slot in (PointerSlot.LAST_INCREMENTAL, PointerSlot.LAST_FULL):
            entry_id = self._catalog.get_pointer(slot)
            if entry_id:
                return entry_id
        raise NoFullBackup("No full backup found to restore from")

    def latest_binlog_set(self) -> BackupEntry:
        """Newest binary log set that passed verification."""

        for entry in reversed(self._catalog.list(EntryKind.BINLOG_SET)):
            if entry.state != EntryState.CAPTURED:
                return entry
            self._logger.warning("pitr_binlog_set_skipped", entry=entry.id, state=entry.state.value)
        raise NoBinlogSet(f"No verified binary log backups found in {self._catalog.backup_dir}")

    def check_coverage(self, restored: BackupEntry, binlog_set: BackupEntry, segments: List[Path]) -> List[str]:
        """Compare the restored backup's binlog position with the archived segments."""

        gaps: List[str] = []
        position = read_backup_position(restored.path)
        names = [segment.name for segment in segments]
        if position is None:
            gaps.append(f"{restored.id} records no binary log position; coverage cannot be checked")
        elif names and position[0] not in names:
            if position[0] < names[0]:
                gaps.append(
                    f"binary log set {binlog_set.id} starts at {names[0]} but {restored.id} ends in {position[0]}"
                )
            else:
                gaps.append(f"binary log set {binlog_set.id} does not contain {position[0]}")
        if binlog_set.created_at < restored.created_at:
            gaps.append(f"binary log set {binlog_set.id} was captured before {restored.id}")

        for gap in gaps:
            self._logger.warning("pitr_coverage_gap", detail=gap)
        if gaps and self._config.strict_binlog_coverage:
            raise PITRFailed("; ".join(gaps))
        return gaps

    def build_replay(self, segments: List[Path], target_time: datetime) -> Path:
        """Decode *segments* up to *target_time* into one private replay file."""

        try:
            self._config.temp_dir.mkdir(parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(prefix="pitr_replay_", suffix=".sql", dir=str(self._config.temp_dir))
            path = Path(name)
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(SUPPRESS_BINLOG_DIRECTIVE + "\n")
        except OSError as exc:
            raise PITRFailed(f"Cannot create replay file in {self._config.temp_dir}: {exc}") from exc
        for segment in segments:
            self._logger.info("pitr_decode", segment=segment.name)
            result = self._runner.run(self._commands.binlog_reader(segment, target_time), stdout_path=path)
            if not result.ok:
                path.unlink(missing_ok=True)
                raise PITRFailed(
                    f"Failed to decode binary log: {result.stderr_tail()}",
                    segment=segment.name,
                )
        return path

    def replay(self, replay_file: Path) -> None:
        with credentials_file(self._config) as creds:
            command = ToolCommands(self._config, creds).sql_client()
            result = self._runner.run(command, stdin_path=replay_file)
        if not result.ok:
            raise PITRFailed(
                f"Failed to apply binary logs: {result.stderr_tail()}",
                line=error_line(result.stderr),
            )

    # ------------------------------------------------------------------
    def recover(
        self,
        target_time: datetime,
        *,
        backup_id: Optional[str] = None,
        pitr_only: bool = False,
        force: Optional[bool] = None,
        dry_run: Optional[bool] = None,
    ) -> PitrResult:
        dry_run = self._config.dry_run if dry_run is None else dry_run
        result = PitrResult(target_time=target_time, binlog_set=None, dry_run=dry_run)
        self._logger.event(
            event="pitr_start",
            phase="pitr",
            ok=True,
            target_time=target_time.isoformat(sep=" "),
            pitr_only=pitr_only,
        )

        restored: Optional[BackupEntry] = None
        if not pitr_only:
            chain = self._resolver.resolve(backup_id or self.default_target())
            self._prepare.run(chain, dry_run=dry_run)
            result.restore = self._restore.restore(chain, force=force, dry_run=dry_run)
            restored = chain.target
        elif backup_id:
            restored = self._catalog.find(backup_id)

        binlog_set = self.latest_binlog_set()
        result.binlog_set = binlog_set
        segments = list_segments(binlog_set.path)
        if not segments:
            raise PITRFailed(f"No binary log files found in {binlog_set.path}")
        result.segments = [segment.name for segment in segments]

        if restored is not None:
            result.warnings.extend(self.check_coverage(restored, binlog_set, segments))

        if dry_run:
            self._logger.info("dry_run_pitr", binlog_set=binlog_set.id, segments=result.segments)
            return result

        replay_file = self.build_replay(segments, target_time)
        result.replay_file = replay_file
        result.statement_count = count_statements(replay_file)
        self._logger.info("pitr_replay_built", path=str(replay_file), statements=result.statement_count)
        if not has_events(replay_file, skip=1):
            replay_file.unlink(missing_ok=True)
            self._logger.event(event="pitr_complete", phase="pitr", ok=True, statements=0, replayed=False)
            return result

        try:
            self.replay(replay_file)
        except PITRFailed as exc:
            # The replay file stays behind for inspection.
            self._logger.event(event="pitr_failed", phase="pitr", ok=False, error=str(exc), replay=str(replay_file))
            raise
        replay_file.unlink(missing_ok=True)
        result.replayed = True
        self._logger.event(
            event="pitr_complete",
            phase="pitr",
            ok=True,
            statements=result.statement_count,
            replayed=True,
        )
        return result


__all__ = ["PITRCoordinator", "SUPPRESS_BINLOG_DIRECTIVE", "error_line"]
