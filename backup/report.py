"""Plain-text inventory of the backup directory."""
from __future__ import annotations

import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from core.paths import directory_size, get_report_path, human_size

from .catalog import BackupCatalog
from .types import BackupEntry, EntryKind

_SECTIONS = (
    (EntryKind.FULL, "Full Backups"),
    (EntryKind.INCREMENTAL, "Incremental Backups"),
    (EntryKind.BINLOG_SET, "Binary Log Backups"),
)
_DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"


def _entry_line(entry: BackupEntry) -> str:
    details = [entry.created_at.strftime(_DISPLAY_FORMAT), human_size(entry.size_bytes or directory_size(entry.path))]
    if entry.kind == EntryKind.BINLOG_SET:
        details.append(f"{len(entry.segments)} logs")
    return f"- {entry.path} ({', '.join(details)})"


def render_report(catalog: BackupCatalog, *, now: datetime) -> str:
    lines: List[str] = [f"MariaDB Backup Report - {now.strftime(_DISPLAY_FORMAT)}", "=" * 46, ""]
    for kind, title in _SECTIONS:
        entries = catalog.list(kind)
        header = f"{title} ({len(entries)}):"
        lines.extend([header, "-" * len(header)])
        lines.extend(_entry_line(entry) for entry in entries)
        lines.append("")

    unknown = catalog.list(EntryKind.UNKNOWN)
    if unknown:
        header = f"Unreadable Entries ({len(unknown)}):"
        lines.extend([header, "-" * len(header)])
        lines.extend(f"- {entry.path} ({entry.error})" for entry in unknown)
        lines.append("")

    backup_dir = catalog.backup_dir
    lines.extend(["Storage Summary:", "----------------"])
    lines.append(f"Total backup size: {human_size(directory_size(backup_dir))}")
    try:
        lines.append(f"Available space: {human_size(shutil.disk_usage(backup_dir).free)}")
    except OSError:
        lines.append("Available space: unknown")
    return "\n".join(lines) + "\n"


def write_report(catalog: BackupCatalog, *, now: Optional[datetime] = None) -> Path:
    now = now or datetime.now()
    path = get_report_path(catalog.backup_dir, now)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_report(catalog, now=now), encoding="utf-8")
    return path


__all__ = ["render_report", "write_report"]
