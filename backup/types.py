"""Common dataclasses shared across backup modules."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple


class EntryKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    BINLOG_SET = "binlog"
    UNKNOWN = "unknown"


class EntryState(str, Enum):
    CAPTURED = "captured"
    VERIFIED = "verified"
    PREPARED = "prepared"
    RESTORED = "restored"


class PointerSlot(str, Enum):
    LAST_FULL = "last_full"
    LAST_INCREMENTAL = "last_incremental"


class PrepareMode(str, Enum):
    APPLY_LOG_ONLY = "apply-log-only"
    FINAL = "final"


@dataclass(frozen=True, slots=True)
class BackupEntry:
    """One capture unit as recorded in the catalog.

    Entries are immutable; state transitions produce a new value through
    :meth:`with_state`.
    """

    id: str
    kind: EntryKind
    path: Path
    created_at: datetime
    base_id: Optional[str] = None
    compressed: bool = False
    encrypted: bool = False
    state: EntryState = EntryState.CAPTURED
    size_bytes: int = 0
    statement_count_estimate: Optional[int] = None
    segments: Tuple[str, ...] = ()
    current_log: Optional[str] = None
    error: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)

    def with_state(self, state: EntryState) -> "BackupEntry":
        return replace(self, state=state)


@dataclass(frozen=True, slots=True)
class Chain:
    """Ordered full + incrementals needed to rebuild ``entries[-1]``."""

    entries: Tuple[BackupEntry, ...]

    @property
    def full(self) -> BackupEntry:
        return self.entries[0]

    @property
    def incrementals(self) -> Tuple[BackupEntry, ...]:
        return self.entries[1:]

    @property
    def target(self) -> BackupEntry:
        return self.entries[-1]

    @property
    def ids(self) -> List[str]:
        return [entry.id for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True, slots=True)
class PrepareStep:
    entry: BackupEntry
    mode: PrepareMode
    target_dir: Path
    incremental_dir: Optional[Path] = None
    decompress: bool = False
    decrypt: bool = False


@dataclass(slots=True)
class CaptureResult:
    entry: BackupEntry
    base: Optional[BackupEntry] = None
    duration_s: float = 0.0
    warnings: List[str] = field(default_factory=list)
    dry_run: bool = False


@dataclass(slots=True)
class RestoreResult:
    target: BackupEntry
    source_dir: Path
    datadir: Path
    steps: List[str] = field(default_factory=list)
    dry_run: bool = False


@dataclass(slots=True)
class PitrResult:
    target_time: datetime
    binlog_set: Optional[BackupEntry]
    segments: List[str] = field(default_factory=list)
    statement_count: int = 0
    replayed: bool = False
    replay_file: Optional[Path] = None
    restore: Optional[RestoreResult] = None
    warnings: List[str] = field(default_factory=list)
    dry_run: bool = False


@dataclass(slots=True)
class RetentionSummary:
    removed: List[str]
    kept: List[str]
    exempt: List[str]
    freed_bytes: int
    reasons: Dict[str, str] = field(default_factory=dict)
    dry_run: bool = False


__all__ = [
    "BackupEntry",
    "CaptureResult",
    "Chain",
    "EntryKind",
    "EntryState",
    "PitrResult",
    "PointerSlot",
    "PrepareMode",
    "PrepareStep",
    "RestoreResult",
    "RetentionSummary",
]
