"""Capture full, incremental and binary log backups."""
from __future__ import annotations

import shutil
import tempfile
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Tuple

from core.db import DatabaseError, connect as db_connect, fetch_one_dict
from core.paths import directory_size, ensure_backup_dir
from core.process import CommandRunner

from .binlog import BINLOG_INFO_FILE, count_statements, is_segment, segment_prefix
from .catalog import BackupCatalog
from .config import BackupConfig
from .errors import (
    BackupVerificationError,
    CaptureFailed,
    EntryNotFound,
    InsufficientDiskSpace,
    PartialCopyFailure,
    ToolInvocationFailed,
)
from .lock import LockCoordinator
from .logs import BackupLogger
from .tools import ToolCommands, credentials_file, run_checked
from .types import BackupEntry, CaptureResult, EntryKind, EntryState, PointerSlot
from .verify import CHECKPOINTS_FILE, verify_entry

Clock = Callable[[], datetime]


def check_disk_space(backup_dir: Path, min_free_pct: int, *, logger: BackupLogger) -> int:
    """Return the free percentage of *backup_dir*'s volume or raise."""

    usage = shutil.disk_usage(backup_dir)
    free_pct = int(usage.free * 100 // usage.total) if usage.total else 0
    logger.info("disk_space", available_pct=free_pct, required_pct=min_free_pct)
    if free_pct < min_free_pct:
        raise InsufficientDiskSpace(
            f"Not enough disk space. Available: {free_pct}%, Required: {min_free_pct}%"
        )
    return free_pct


def select_incremental_base(catalog: BackupCatalog, *, logger: BackupLogger) -> Optional[BackupEntry]:
    """Pick the base for the next incremental, or None when no full exists."""

    full_id = catalog.get_pointer(PointerSlot.LAST_FULL)
    full: Optional[BackupEntry] = None
    if full_id:
        try:
            full = catalog.get(full_id)
        except EntryNotFound:
            full = None
    if full is None or full.kind != EntryKind.FULL:
        return None
    incr_id = catalog.get_pointer(PointerSlot.LAST_INCREMENTAL)
    if incr_id and incr_id != full.id:
        try:
            previous = catalog.get(incr_id)
        except EntryNotFound:
            previous = None
        if (
            previous is not None
            and previous.kind == EntryKind.INCREMENTAL
            and previous.created_at > full.created_at
            and (previous.path / CHECKPOINTS_FILE).is_file()
        ):
            logger.info("incremental_base", base=previous.id, source="last_incremental")
            return previous
        logger.warning("incremental_base_invalid", pointer=incr_id, fallback=full.id)
    logger.info("incremental_base", base=full.id, source="last_full")
    return full


def _capture_engine(
    kind: EntryKind,
    *,
    config: BackupConfig,
    catalog: BackupCatalog,
    runner: CommandRunner,
    logger: BackupLogger,
    lock: Optional[LockCoordinator],
    clock: Clock,
) -> CaptureResult:
    warnings: List[str] = []
    base: Optional[BackupEntry] = None
    if kind == EntryKind.INCREMENTAL:
        base = select_incremental_base(catalog, logger=logger)
        if base is None:
            message = "No full backup found. Performing full backup first."
            logger.warning("incremental_promoted", reason=message)
            warnings.append(message)
            kind = EntryKind.FULL

    entry_id, path, created = catalog.allocate(kind, clock())
    draft = BackupEntry(
        id=entry_id,
        kind=kind,
        path=path,
        created_at=created,
        base_id=base.id if base else None,
        compressed=config.capture.compress,
        encrypted=config.capture.encrypt,
    )
    if config.dry_run:
        logger.info("dry_run_capture", kind=kind.value, path=str(path), base=draft.base_id)
        return CaptureResult(entry=draft, base=base, warnings=warnings, dry_run=True)

    check_disk_space(ensure_backup_dir(config.backup_dir), config.capture.min_disk_space_pct, logger=logger)
    logger.event(event="backup_start", phase="capture", ok=True, id=entry_id, kind=kind.value, base=draft.base_id)

    started = time.monotonic()
    with credentials_file(config) as creds:
        commands = ToolCommands(config, creds)
        command = commands.backup(path, base_dir=base.path if base else None)
        read_lock = lock.acquire() if lock is not None else None
        try:
            path.mkdir(parents=True, exist_ok=False)
            try:
                run_checked(runner, command, what=f"{kind.value} backup failed")
            except ToolInvocationFailed:
                shutil.rmtree(path, ignore_errors=True)
                logger.event(event="backup_failed", phase="capture", ok=False, id=entry_id)
                raise
        finally:
            if lock is not None:
                lock.release(read_lock)
    duration = time.monotonic() - started

    entry = BackupEntry(
        id=entry_id,
        kind=kind,
        path=path,
        created_at=created,
        base_id=draft.base_id,
        compressed=draft.compressed,
        encrypted=draft.encrypted,
        state=EntryState.CAPTURED,
        size_bytes=directory_size(path),
    )
    catalog.record(entry)
    with credentials_file(config) as creds:
        try:
            verify_entry(
                entry,
                logger=logger,
                runner=runner,
                commands=ToolCommands(config, creds),
                test_recovery=config.capture.test_recovery,
                temp_dir=config.temp_dir,
            )
        except BackupVerificationError:
            logger.event(event="backup_verification_failed", phase="capture", ok=False, id=entry_id)
            raise
    entry = catalog.update_state(entry_id, EntryState.VERIFIED)

    if kind == EntryKind.FULL:
        catalog.set_pointer(PointerSlot.LAST_FULL, entry_id)
    catalog.set_pointer(PointerSlot.LAST_INCREMENTAL, entry_id)
    logger.event(
        event="backup_complete",
        phase="capture",
        ok=True,
        id=entry_id,
        kind=kind.value,
        size=entry.size_bytes,
        duration_s=round(duration, 1),
    )
    return CaptureResult(entry=entry, base=base, duration_s=duration, warnings=warnings)


# ----------------------------------------------------------------------
def _binlog_location(conn, config: BackupConfig) -> Tuple[str, Path, Mapping[str, Any]]:
    status = fetch_one_dict(conn, "SHOW MASTER STATUS")
    current = str((status or {}).get("File") or "")
    if not current:
        raise CaptureFailed("Could not determine current binary log file")
    variable = fetch_one_dict(conn, "SHOW VARIABLES LIKE 'log_bin_basename'")
    basename = str((variable or {}).get("Value") or "")
    directory = Path(basename).parent if basename else config.connection.datadir
    return current, directory, status or {}


def _estimate_statements(
    segments: List[Path], *, config: BackupConfig, runner: CommandRunner, logger: BackupLogger
) -> Optional[int]:
    commands = ToolCommands(config)
    config.temp_dir.mkdir(parents=True, exist_ok=True)
    total = 0
    for segment in segments:
        with tempfile.NamedTemporaryFile(prefix="binlog_", suffix=".sql", dir=str(config.temp_dir)) as handle:
            result = runner.run(commands.binlog_dump(segment), stdout_path=Path(handle.name))
            if not result.ok:
                logger.warning("statement_estimate_failed", segment=segment.name, error=result.stderr_tail())
                return None
            total += count_statements(Path(handle.name))
    return total


def _capture_binlogs(
    *,
    config: BackupConfig,
    catalog: BackupCatalog,
    runner: CommandRunner,
    logger: BackupLogger,
    connect: Callable[[Mapping[str, Any]], Any],
    clock: Clock,
) -> CaptureResult:
    now = clock()
    entry_id, path, created = catalog.allocate(EntryKind.BINLOG_SET, now)
    draft = BackupEntry(id=entry_id, kind=EntryKind.BINLOG_SET, path=path, created_at=created)
    if config.dry_run:
        logger.info("dry_run_capture", kind="binlog", path=str(path))
        return CaptureResult(entry=draft, dry_run=True)

    check_disk_space(ensure_backup_dir(config.backup_dir), config.capture.min_disk_space_pct, logger=logger)
    logger.event(event="backup_start", phase="capture", ok=True, id=entry_id, kind="binlog")

    try:
        conn = connect(config.connection.connect_kwargs())
    except DatabaseError as exc:
        raise CaptureFailed(f"Cannot query binary log status: {exc}") from exc
    try:
        current, binlog_dir, status = _binlog_location(conn, config)
    except DatabaseError as exc:
        raise CaptureFailed(f"Cannot query binary log status: {exc}") from exc
    finally:
        conn.close()
    logger.info("binlog_location", current=current, directory=str(binlog_dir))

    prefix = segment_prefix(current)
    cutoff = now - timedelta(days=config.binlog.max_days) if config.binlog.max_days > 0 else None
    found: List[Path] = []
    if binlog_dir.is_dir():
        for item in sorted(binlog_dir.iterdir(), key=lambda p: p.name):
            if not item.is_file() or not is_segment(item, prefix):
                continue
            if cutoff is not None and datetime.fromtimestamp(item.stat().st_mtime) < cutoff:
                continue
            found.append(item)
    if not found:
        raise CaptureFailed(f"No binary log files found in {binlog_dir}")

    path.mkdir(parents=True, exist_ok=False)
    copied: List[Path] = []
    for segment in found:
        try:
            shutil.copy2(segment, path / segment.name)
        except OSError as exc:
            logger.warning("binlog_copy_failed", segment=segment.name, error=str(exc))
            continue
        copied.append(path / segment.name)

    (path / BINLOG_INFO_FILE).write_text(
        "".join(f"{key}: {value}\n" for key, value in status.items()), encoding="utf-8"
    )

    estimate = None
    if config.binlog.estimate_statements and copied:
        estimate = _estimate_statements(copied, config=config, runner=runner, logger=logger)

    entry = BackupEntry(
        id=entry_id,
        kind=EntryKind.BINLOG_SET,
        path=path,
        created_at=created,
        state=EntryState.CAPTURED,
        size_bytes=directory_size(path),
        statement_count_estimate=estimate,
        segments=tuple(item.name for item in copied),
        current_log=current,
    )
    catalog.record(entry)

    warnings: List[str] = []
    if len(copied) != len(found):
        failure = PartialCopyFailure(len(copied), len(found))
        if not config.ignore_errors or not copied:
            logger.event(event="backup_failed", phase="capture", ok=False, id=entry_id, error=str(failure))
            raise failure
        warnings.append(f"Binary log backup completed with warnings - {failure}")
        logger.warning("binlog_partial_copy", id=entry_id, copied=len(copied), found=len(found))

    verify_entry(entry, logger=logger)
    entry = catalog.update_state(entry_id, EntryState.VERIFIED)
    logger.event(event="backup_complete", phase="capture", ok=True, id=entry_id, kind="binlog", segments=len(copied))
    return CaptureResult(entry=entry, warnings=warnings)


def capture(
    kind: EntryKind,
    *,
    config: BackupConfig,
    catalog: BackupCatalog,
    runner: CommandRunner,
    logger: BackupLogger,
    lock: Optional[LockCoordinator] = None,
    connect: Callable[[Mapping[str, Any]], Any] = db_connect,
    clock: Clock = datetime.now,
) -> CaptureResult:
    """Capture one entry of *kind* and record it in *catalog*.

    Pointers move only after the new entry passed verification.
    """

    if kind not in (EntryKind.FULL, EntryKind.INCREMENTAL, EntryKind.BINLOG_SET):
        raise CaptureFailed(f"cannot capture entries of kind {kind.value}")
    try:
        if kind == EntryKind.BINLOG_SET:
            return _capture_binlogs(
                config=config, catalog=catalog, runner=runner, logger=logger, connect=connect, clock=clock
            )
        return _capture_engine(
            kind, config=config, catalog=catalog, runner=runner, logger=logger, lock=lock, clock=clock
        )
    except OSError as exc:
        logger.event(event="backup_failed", phase="capture", ok=False, kind=kind.value, error=str(exc))
        raise CaptureFailed(f"{kind.value} backup failed: {exc}") from exc


__all__ = ["capture", "check_disk_space", "select_incremental_base"]
