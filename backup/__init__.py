"""Backup, restore and point-in-time recovery orchestration for MariaDB."""
from __future__ import annotations

__version__ = "1.1.0"

from .api import BackupService
from .catalog import BackupCatalog
from .chain import ChainResolver
from .errors import BackupError
from .retention import RetentionPolicy
from .types import BackupEntry, Chain, EntryKind, EntryState, PointerSlot, RetentionSummary

__all__ = [
    "BackupCatalog",
    "BackupEntry",
    "BackupError",
    "BackupService",
    "Chain",
    "ChainResolver",
    "EntryKind",
    "EntryState",
    "PointerSlot",
    "RetentionPolicy",
    "RetentionSummary",
    "__version__",
]
