"""Copy a prepared chain back into the server's data directory.

Each step is a hard gate. A failure stops the sequence where it is and
leaves the data directory as it was at that moment; nothing is rolled back.
"""
from __future__ import annotations

import shutil
from pathlib import Path
from typing import Callable, List, Optional

from core.process import Command, CommandRunner

from .catalog import BackupCatalog
from .config import BackupConfig
from .errors import RestoreFailed, ToolInvocationFailed
from .logs import BackupLogger
from .server import ServerController
from .tools import ToolCommands, run_checked
from .types import Chain, EntryState, RestoreResult

RESTORE_STEPS = (
    "confirm",
    "stop_server",
    "clear_datadir",
    "copy_back",
    "fix_ownership",
    "start_server",
    "health_check",
)


def console_confirm(prompt: str) -> bool:
    answer = input(f"{prompt} (y/n) ")
    return answer.strip().lower() in ("y", "yes")


def _datadir_has_content(datadir: Path) -> bool:
    return datadir.is_dir() and any(datadir.iterdir())


def clear_directory(directory: Path) -> None:
    """Remove every child of *directory*, keeping the directory itself."""

    directory.mkdir(parents=True, exist_ok=True)
    for child in directory.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


class RestoreCoordinator:
    def __init__(
        self,
        config: BackupConfig,
        catalog: BackupCatalog,
        runner: CommandRunner,
        *,
        logger: BackupLogger,
        server: Optional[ServerController] = None,
        confirm: Callable[[str], bool] = console_confirm,
    ) -> None:
        self._config = config
        self._catalog = catalog
        self._runner = runner
        self._logger = logger
        self._server = server or ServerController(runner, config.connection.service)
        self._confirm = confirm
        self._commands = ToolCommands(config)

    # ------------------------------------------------------------------
    def _step_confirm(self, datadir: Path, force: bool) -> None:
        if force or not _datadir_has_content(datadir):
            return
        prompt = f"Data directory {datadir} is not empty. This will overwrite existing data. Are you sure?"
        if not self._confirm(prompt):
            raise RestoreFailed("confirm", "Restore cancelled by user")

    def _step_stop(self) -> None:
        if not self._server.stop():
            raise RestoreFailed("stop_server", "Failed to stop MariaDB service")

    def _step_clear(self, datadir: Path) -> None:
        try:
            clear_directory(datadir)
        except OSError as exc:
            raise RestoreFailed("clear_datadir", f"cannot clear {datadir}: {exc}") from exc

    def _step_copy_back(self, chain: Chain, datadir: Path) -> None:
        source = chain.full.path
        if self._catalog.get(chain.full.id).state != EntryState.PREPARED:
            raise RestoreFailed("copy_back", f"{chain.full.id} has not been prepared")
        try:
            run_checked(self._runner, self._commands.copy_back(source, datadir), what="copy-back failed")
        except ToolInvocationFailed as exc:
            raise RestoreFailed("copy_back", str(exc)) from exc

    def _step_ownership(self, datadir: Path) -> None:
        conn = self._config.connection
        command = Command("chown", ("-R", f"{conn.os_user}:{conn.os_group}", str(datadir)), label="chown")
        try:
            run_checked(self._runner, command, what="Failed to set permissions on data directory")
        except ToolInvocationFailed as exc:
            raise RestoreFailed("fix_ownership", str(exc)) from exc

    def _step_start(self) -> None:
        if not self._server.start():
            raise RestoreFailed("start_server", "Failed to start MariaDB service")

    def _step_health(self) -> None:
        options = self._config.restore
        if not self._server.wait_healthy(options.health_timeout_s, options.health_interval_s):
            raise RestoreFailed(
                "health_check",
                f"MariaDB service failed to become active within {options.health_timeout_s:.0f}s",
            )

    # ------------------------------------------------------------------
    def restore(
        self,
        chain: Chain,
        *,
        force: Optional[bool] = None,
        dry_run: Optional[bool] = None,
    ) -> RestoreResult:
        force = self._config.restore.force if force is None else force
        dry_run = self._config.dry_run if dry_run is None else dry_run
        datadir = self._config.connection.datadir
        result = RestoreResult(target=chain.target, source_dir=chain.full.path, datadir=datadir, dry_run=dry_run)
        if dry_run:
            self._logger.info("dry_run_restore", chain=chain.ids, datadir=str(datadir), steps=list(RESTORE_STEPS))
            result.steps = list(RESTORE_STEPS)
            return result

        self._logger.event(event="restore_start", phase="restore", ok=True, target=chain.target.id)
        actions = (
            ("confirm", lambda: self._step_confirm(datadir, force)),
            ("stop_server", self._step_stop),
            ("clear_datadir", lambda: self._step_clear(datadir)),
            ("copy_back", lambda: self._step_copy_back(chain, datadir)),
            ("fix_ownership", lambda: self._step_ownership(datadir)),
            ("start_server", self._step_start),
            ("health_check", self._step_health),
        )
        completed: List[str] = []
        for name, action in actions:
            try:
                action()
            except RestoreFailed as exc:
                self._logger.event(event="restore_failed", phase="restore", ok=False, step=name, error=str(exc))
                raise
            completed.append(name)
            self._logger.info("restore_step", step=name)
        result.steps = completed

        self._catalog.update_state(chain.target.id, EntryState.RESTORED)
        self._logger.event(event="restore_complete", phase="restore", ok=True, target=chain.target.id)
        return result


__all__ = ["RESTORE_STEPS", "RestoreCoordinator", "clear_directory", "console_confirm"]
