"""Helpers for archived binary log segments and decoded replay text."""
from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional, Tuple

BINLOG_INFO_FILE = "binlog_info.txt"
BACKUP_BINLOG_POSITION_FILE = "xtrabackup_binlog_info"

_SEGMENT_RE = re.compile(r"^(?P<prefix>.+)\.(?P<seq>\d+)$")
_STATEMENT_RE = re.compile(
    r"^\s*(INSERT|UPDATE|DELETE|CREATE|ALTER|DROP|TRUNCATE|RENAME|REPLACE|BEGIN|COMMIT)\b",
    re.IGNORECASE,
)
_EVENT_HEADER_RE = re.compile(
    r"^#\d{6}\s+\d{1,2}:\d{2}:\d{2}\s+server id\s+\d+\s+end_log_pos\s+\d+(?:\s+CRC32\s+0x[0-9a-fA-F]+)?\s+(?P<kind>\S.*)$"
)
_ROLLBACK_RE = re.compile(r"^ROLLBACK\s*(?:/\*.*\*/)?\s*;$", re.IGNORECASE)
_BOOKKEEPING_EVENTS = frozenset({"Start:", "Format_desc:", "Rotate", "Stop", "Binlog", "Gtid"})


def segment_prefix(name: str) -> str:
    """``mysql-bin.000123`` -> ``mysql-bin``."""

    match = _SEGMENT_RE.match(name)
    return match.group("prefix") if match else name


def is_segment(path: Path, prefix: Optional[str] = None) -> bool:
    match = _SEGMENT_RE.match(path.name)
    if not match:
        return False
    return prefix is None or match.group("prefix") == prefix


def list_segments(directory: Path) -> List[Path]:
    """Archived segments in capture order.

    Sequence numbers are zero padded, so name order is chronological order.
    """

    if not directory.is_dir():
        return []
    return sorted((item for item in directory.iterdir() if item.is_file() and is_segment(item)), key=lambda p: p.name)


def count_statements(path: Path) -> int:
    """Rough count of data-changing statements in decoded binlog text."""

    total = 0
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            if _STATEMENT_RE.match(line):
                total += 1
    return total


def has_events(path: Path, *, skip: int = 0) -> bool:
    """True when decoded binlog text carries anything the SQL client would apply.

    The first *skip* lines are ignored. So are comments, versioned
    directives, ``DELIMITER`` changes, the decoder's own ``ROLLBACK``
    bracketing and the base64 payload of bookkeeping events. Any other
    line, or an event header naming a non-bookkeeping event, counts.
    """

    in_payload = False
    payload_counts = False
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for number, line in enumerate(handle):
            if number < skip:
                continue
            text = line.strip()
            if in_payload:
                if text.startswith("'"):
                    in_payload = False
                    if payload_counts:
                        return True
                continue
            if not text:
                continue
            if text.startswith("#"):
                header = _EVENT_HEADER_RE.match(text)
                if header:
                    payload_counts = header.group("kind").split()[0] not in _BOOKKEEPING_EVENTS
                continue
            if text.startswith(("/*!", "DELIMITER")) or _ROLLBACK_RE.match(text):
                continue
            if text.startswith("BINLOG '"):
                in_payload = not text.endswith("*/;")
                if not in_payload and payload_counts:
                    return True
                continue
            return True
    return False


def read_backup_position(backup_dir: Path) -> Optional[Tuple[str, int]]:
    """Return ``(file, position)`` from a backup's ``xtrabackup_binlog_info``."""

    path = backup_dir / BACKUP_BINLOG_POSITION_FILE
    try:
        fields = path.read_text(encoding="utf-8").split()
    except OSError:
        return None
    if len(fields) < 2:
        return None
    try:
        return fields[0], int(fields[1])
    except ValueError:
        return None


__all__ = [
    "BACKUP_BINLOG_POSITION_FILE",
    "BINLOG_INFO_FILE",
    "count_statements",
    "has_events",
    "is_segment",
    "list_segments",
    "read_backup_position",
    "segment_prefix",
]
