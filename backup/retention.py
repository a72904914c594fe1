"""Retention policy enforcement for backups."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from .catalog import BackupCatalog
from .logs import BackupLogger
from .types import BackupEntry, EntryKind, RetentionSummary


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    """Age horizon plus per-kind count limits; ``0`` disables a rule."""

    max_age_days: int = 7
    keep_full: int = 4
    keep_incremental: int = 14
    keep_binlog: int = 0

    def limit_for(self, kind: EntryKind) -> int:
        if kind == EntryKind.FULL:
            return self.keep_full
        if kind == EntryKind.INCREMENTAL:
            return self.keep_incremental
        if kind == EntryKind.BINLOG_SET:
            return self.keep_binlog
        return 0


_MANAGED_KINDS = (EntryKind.FULL, EntryKind.INCREMENTAL, EntryKind.BINLOG_SET)


def _select_victims(
    entries: List[BackupEntry],
    *,
    limit: int,
    cutoff: Optional[datetime],
    exempt: Set[str],
    reasons: Dict[str, str],
) -> List[BackupEntry]:
    victims: List[BackupEntry] = []
    remaining: List[BackupEntry] = []
    for entry in entries:
        if cutoff is not None and entry.created_at < cutoff and entry.id not in exempt:
            victims.append(entry)
            reasons[entry.id] = "age"
        else:
            remaining.append(entry)

    if limit > 0 and len(remaining) > limit:
        surplus = len(remaining) - limit
        # Oldest first; pointer targets still occupy a slot.
        for entry in remaining:
            if surplus <= 0:
                break
            if entry.id in exempt:
                continue
            victims.append(entry)
            reasons[entry.id] = "count"
            surplus -= 1
    return victims


def plan_retention(
    entries: List[BackupEntry],
    policy: RetentionPolicy,
    *,
    now: datetime,
    exempt: Set[str],
) -> Dict[str, str]:
    """Return ``{entry_id: reason}`` for every entry the policy evicts.

    Each kind is handled separately; entries of unknown kind are never
    touched.
    """

    cutoff = now - timedelta(days=policy.max_age_days) if policy.max_age_days > 0 else None
    reasons: Dict[str, str] = {}
    for kind in _MANAGED_KINDS:
        partition = sorted((entry for entry in entries if entry.kind == kind), key=lambda e: e.sort_key)
        _select_victims(partition, limit=policy.limit_for(kind), cutoff=cutoff, exempt=exempt, reasons=reasons)
    return reasons


def apply_retention(
    catalog: BackupCatalog,
    policy: RetentionPolicy,
    *,
    logger: BackupLogger,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> RetentionSummary:
    now = now or datetime.now()
    entries = catalog.list()
    exempt = set(catalog.pointer_targets())
    reasons = plan_retention(entries, policy, now=now, exempt=exempt)

    removed: List[str] = []
    freed = 0
    for entry in entries:
        reason = reasons.get(entry.id)
        if reason is None:
            continue
        if dry_run:
            logger.info("backup_would_remove", id=entry.id, reason=reason)
        else:
            catalog.remove(entry.id)
            logger.warning("backup_removed", id=entry.id, reason=reason)
        removed.append(entry.id)
        freed += entry.size_bytes

    kept = [entry.id for entry in entries if entry.id not in reasons]
    exempt_present = sorted(entry.id for entry in entries if entry.id in exempt)
    logger.event(
        event="retention_applied",
        phase="retention",
        ok=True,
        removed=len(removed),
        kept=len(kept),
        dry_run=dry_run,
    )
    return RetentionSummary(
        removed=removed,
        kept=kept,
        exempt=exempt_present,
        freed_bytes=freed,
        reasons=reasons,
        dry_run=dry_run,
    )


__all__ = ["RetentionPolicy", "apply_retention", "plan_retention"]
