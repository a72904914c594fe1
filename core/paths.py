from __future__ import annotations

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

__all__ = [
    "ENTRY_PREFIXES",
    "LAST_FULL_POINTER",
    "LAST_INCREMENTAL_POINTER",
    "LEGACY_METADATA_FILENAME",
    "METADATA_FILENAME",
    "TIMESTAMP_FORMAT",
    "directory_size",
    "ensure_backup_dir",
    "format_entry_name",
    "get_logs_dir",
    "get_pointer_path",
    "get_report_path",
    "human_size",
    "parse_entry_name",
]

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

# Directory prefixes are part of the on-disk layout shared with older tooling.
ENTRY_PREFIXES = {
    "full": "full_",
    "incremental": "incr_",
    "binlog": "binlogs_",
}

LAST_FULL_POINTER = "last_full_backup"
LAST_INCREMENTAL_POINTER = "last_incr_backup"
METADATA_FILENAME = "backup_metadata.json"
LEGACY_METADATA_FILENAME = "backup_metadata.txt"

_ENTRY_RE = re.compile(r"^(full|incr|binlogs)_(\d{14})$")
_PREFIX_TO_KIND = {"full": "full", "incr": "incremental", "binlogs": "binlog"}


def format_entry_name(kind: str, created: datetime) -> str:
    """Return the directory name for an entry of *kind* captured at *created*."""

    try:
        prefix = ENTRY_PREFIXES[kind]
    except KeyError as exc:
        raise ValueError(f"unknown entry kind: {kind}") from exc
    return f"{prefix}{created.strftime(TIMESTAMP_FORMAT)}"


def parse_entry_name(name: str) -> Optional[Tuple[str, datetime]]:
    """Return ``(kind, created)`` for a conforming directory name, else None."""

    match = _ENTRY_RE.match(name)
    if not match:
        return None
    try:
        created = datetime.strptime(match.group(2), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return _PREFIX_TO_KIND[match.group(1)], created


def ensure_backup_dir(backup_dir: Path) -> Path:
    path = Path(backup_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_pointer_path(backup_dir: Path, slot: str) -> Path:
    names = {"last_full": LAST_FULL_POINTER, "last_incremental": LAST_INCREMENTAL_POINTER}
    try:
        return Path(backup_dir) / names[slot]
    except KeyError as exc:
        raise ValueError(f"unknown pointer slot: {slot}") from exc


def get_logs_dir(backup_dir: Path) -> Path:
    return Path(backup_dir) / "logs"


def get_report_path(backup_dir: Path, when: datetime) -> Path:
    return Path(backup_dir) / f"backup_report_{when.strftime('%Y%m%d')}.txt"


def directory_size(path: Path) -> int:
    """Total size in bytes of regular files below *path*."""

    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += (Path(root) / name).stat().st_size
            except OSError:
                continue
    return total


def human_size(size_bytes: int) -> str:
    value = float(size_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if value < 1024 or unit == "T":
            if unit == "B":
                return f"{int(value)}{unit}"
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}T"
