"""Verify captured entries before they can be referenced by a pointer."""
from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from core.process import CommandRunner

from .errors import BackupVerificationError, ToolInvocationFailed
from .logs import BackupLogger
from .tools import ToolCommands, run_checked
from .types import BackupEntry, EntryKind

CHECKPOINTS_FILE = "xtrabackup_checkpoints"
INFO_FILE = "xtrabackup_info"


def _require(base: Path, names: List[str]) -> None:
    for name in names:
        if not (base / name).is_file():
            raise BackupVerificationError(f"Backup verification failed - missing {name} in {base}")


def _test_recovery(
    entry: BackupEntry,
    *,
    runner: CommandRunner,
    commands: ToolCommands,
    temp_dir: Path,
    logger: BackupLogger,
) -> None:
    temp_dir.mkdir(parents=True, exist_ok=True)
    needed = sum(item.stat().st_size for item in entry.path.rglob("*") if item.is_file())
    available = shutil.disk_usage(temp_dir).free
    if available < needed:
        raise BackupVerificationError(
            f"Not enough space for test recovery. Required: {needed} bytes, Available: {available} bytes"
        )
    scratch = Path(tempfile.mkdtemp(prefix="mariadb_test_restore_", dir=str(temp_dir)))
    try:
        copy = scratch / entry.id
        try:
            shutil.copytree(entry.path, copy)
        except OSError as exc:
            raise BackupVerificationError(f"Test recovery copy failed: {exc}") from exc
        logger.info("test_recovery_prepare", id=entry.id, scratch=str(copy))
        try:
            run_checked(runner, commands.prepare(copy, export=True), what="Test recovery preparation failed")
        except ToolInvocationFailed as exc:
            raise BackupVerificationError(str(exc)) from exc
    finally:
        shutil.rmtree(scratch, ignore_errors=True)


def verify_entry(
    entry: BackupEntry,
    *,
    logger: BackupLogger,
    runner: Optional[CommandRunner] = None,
    commands: Optional[ToolCommands] = None,
    test_recovery: bool = False,
    temp_dir: Path = Path("/tmp"),
) -> Dict[str, object]:
    """Check *entry*'s payload; raise :class:`BackupVerificationError` on failure."""

    base = entry.path
    if not base.is_dir():
        raise BackupVerificationError(f"Backup directory does not exist: {base}")

    checks: List[str] = []
    if entry.kind in (EntryKind.FULL, EntryKind.INCREMENTAL):
        if entry.compressed or entry.encrypted:
            # Only the checkpoint file is written in clear for encoded captures.
            _require(base, [CHECKPOINTS_FILE])
            checks.append("checkpoints")
            if test_recovery:
                logger.info("test_recovery_skipped", id=entry.id, reason="encoded payload")
        else:
            _require(base, [CHECKPOINTS_FILE, INFO_FILE])
            checks.extend(["checkpoints", "info"])
            if test_recovery and entry.kind == EntryKind.FULL:
                if runner is None or commands is None:
                    raise BackupVerificationError("test recovery requested without a command runner")
                _test_recovery(entry, runner=runner, commands=commands, temp_dir=temp_dir, logger=logger)
                checks.append("test_recovery")
    elif entry.kind == EntryKind.BINLOG_SET:
        if not entry.segments:
            raise BackupVerificationError(f"Binary log set {entry.id} contains no segments")
        missing = [name for name in entry.segments if not (base / name).is_file()]
        if missing:
            raise BackupVerificationError(f"Binary log set {entry.id} is missing {', '.join(missing)}")
        checks.append("segments")
    else:
        raise BackupVerificationError(f"{entry.id} has no readable metadata")

    logger.event(event="backup_verified", phase="verify", ok=True, id=entry.id, checks=checks)
    return {"id": entry.id, "checks": checks}


__all__ = ["CHECKPOINTS_FILE", "INFO_FILE", "verify_entry"]
