"""Merge a resolved chain into a copy-back-ready full backup directory."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from core.process import CommandRunner

from .catalog import BackupCatalog
from .config import BackupConfig
from .errors import AlreadyPrepared, PrepareFailed, ToolInvocationFailed
from .logs import BackupLogger
from .tools import ToolCommands, run_checked
from .types import Chain, EntryKind, EntryState, PrepareMode, PrepareStep
from .verify import CHECKPOINTS_FILE

UNPREPARED_BACKUP_TYPE = "full-backuped"


def read_checkpoints(directory: Path) -> Dict[str, str]:
    """Parse ``key = value`` lines from the engine's checkpoint file."""

    values: Dict[str, str] = {}
    path = directory / CHECKPOINTS_FILE
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    return values


class PrepareEngine:
    """Drive the backup engine's prepare operation over a chain.

    Elements are applied strictly left to right. Every element except the
    last is applied with ``--apply-log-only``; the last one closes the
    directory. All merges land in the full backup's directory, so a chain
    can be prepared exactly once.
    """

    def __init__(
        self,
        config: BackupConfig,
        catalog: BackupCatalog,
        runner: CommandRunner,
        *,
        logger: BackupLogger,
    ) -> None:
        self._config = config
        self._catalog = catalog
        self._runner = runner
        self._logger = logger
        self._commands = ToolCommands(config)

    def plan(self, chain: Chain) -> List[PrepareStep]:
        full_dir = chain.full.path
        last = len(chain) - 1
        steps: List[PrepareStep] = []
        for index, entry in enumerate(chain.entries):
            mode = PrepareMode.FINAL if index == last else PrepareMode.APPLY_LOG_ONLY
            steps.append(
                PrepareStep(
                    entry=entry,
                    mode=mode,
                    target_dir=full_dir,
                    incremental_dir=entry.path if entry.kind == EntryKind.INCREMENTAL else None,
                    decompress=entry.compressed,
                    decrypt=entry.encrypted,
                )
            )
        return steps

    def check_unprepared(self, chain: Chain) -> None:
        """Raise :class:`AlreadyPrepared` if the full directory was merged before."""

        full = chain.full
        if full.state in (EntryState.PREPARED, EntryState.RESTORED):
            raise AlreadyPrepared(full.id, f"catalog state is {full.state.value}")
        try:
            checkpoints = read_checkpoints(full.path)
        except OSError as exc:
            raise PrepareFailed(full.id, f"cannot read {CHECKPOINTS_FILE}: {exc}") from exc
        backup_type = checkpoints.get("backup_type")
        if backup_type and backup_type != UNPREPARED_BACKUP_TYPE:
            raise AlreadyPrepared(full.id, f"directory is already {backup_type}")

    def _run_step(self, step: PrepareStep) -> None:
        entry = step.entry
        if step.decompress or step.decrypt:
            self._logger.info("prepare_decode", id=entry.id, compressed=step.decompress, encrypted=step.decrypt)
            run_checked(
                self._runner,
                self._commands.decompress(entry.path, compressed=step.decompress, encrypted=step.decrypt),
                what="decompression failed",
            )
        self._logger.info("prepare_step", id=entry.id, mode=step.mode.value)
        run_checked(
            self._runner,
            self._commands.prepare(
                step.target_dir,
                incremental_dir=step.incremental_dir,
                apply_log_only=step.mode == PrepareMode.APPLY_LOG_ONLY,
            ),
            what=f"prepare ({step.mode.value}) failed",
        )

    def run(self, chain: Chain, *, dry_run: Optional[bool] = None) -> List[PrepareStep]:
        dry_run = self._config.dry_run if dry_run is None else dry_run
        steps = self.plan(chain)
        if dry_run:
            for step in steps:
                self._logger.info("dry_run_prepare", id=step.entry.id, mode=step.mode.value)
            return steps

        self.check_unprepared(chain)
        self._logger.event(event="prepare_start", phase="prepare", ok=True, chain=chain.ids)
        for step in steps:
            try:
                self._run_step(step)
            except ToolInvocationFailed as exc:
                self._logger.event(event="prepare_failed", phase="prepare", ok=False, id=step.entry.id)
                raise PrepareFailed(step.entry.id, str(exc)) from exc

        self._catalog.update_state(chain.full.id, EntryState.PREPARED)
        if chain.target.id != chain.full.id:
            self._catalog.update_state(chain.target.id, EntryState.PREPARED)
        self._logger.event(event="prepare_complete", phase="prepare", ok=True, chain=chain.ids)
        return steps


__all__ = ["PrepareEngine", "UNPREPARED_BACKUP_TYPE", "read_checkpoints"]
