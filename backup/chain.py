"""Resolve the full + incremental chain behind a restore target."""
from __future__ import annotations

from typing import List

from .catalog import BackupCatalog
from .errors import AmbiguousChain, ChainBroken, EntryNotFound
from .types import BackupEntry, Chain, EntryKind, EntryState, PointerSlot


def _require_usable(entry: BackupEntry) -> None:
    if entry.kind == EntryKind.UNKNOWN:
        raise ChainBroken(f"{entry.id} has unreadable metadata: {entry.error}")
    if entry.state == EntryState.CAPTURED:
        raise ChainBroken(f"{entry.id} was never verified")


class ChainResolver:
    """Compute the ordered chain of entries needed to rebuild a target.

    Gaps, unverified members and timestamp ties are failures. The only
    entries skipped are unverified captures nothing was built on.
    Nothing is reordered to make a chain fit.
    """

    def __init__(self, catalog: BackupCatalog) -> None:
        self._catalog = catalog

    def resolve(self, target_id: str) -> Chain:
        target = self._catalog.get(target_id)
        if target.kind == EntryKind.FULL:
            _require_usable(target)
            return Chain((target,))
        if target.kind != EntryKind.INCREMENTAL:
            raise ChainBroken(f"{target.id} is a {target.kind.value} entry and cannot be restored")

        full_id = self._catalog.get_pointer(PointerSlot.LAST_FULL)
        if not full_id:
            raise ChainBroken(f"no full backup recorded for incremental {target.id}")
        try:
            full = self._catalog.get(full_id)
        except EntryNotFound as exc:
            raise ChainBroken(f"full backup {full_id} referenced by last_full is missing") from exc
        if full.kind != EntryKind.FULL:
            raise ChainBroken(f"last_full points at {full.id}, which is not a full backup")
        _require_usable(full)
        if target.created_at <= full.created_at:
            raise ChainBroken(f"{target.id} predates the current full backup {full.id}")

        candidates = [
            entry
            for entry in self._catalog.list(EntryKind.INCREMENTAL)
            if full.created_at < entry.created_at <= target.created_at
        ]
        if target.id not in {entry.id for entry in candidates}:
            raise ChainBroken(f"{target.id} is not part of the chain starting at {full.id}")
        # A capture that failed verification is left out unless a later entry builds on it.
        referenced = {entry.base_id for entry in candidates}
        candidates = [
            entry
            for entry in candidates
            if entry.id == target.id or entry.state != EntryState.CAPTURED or entry.id in referenced
        ]

        seen = {full.created_at: full.id}
        for entry in candidates:
            other = seen.get(entry.created_at)
            if other is not None:
                raise AmbiguousChain(f"{entry.id} and {other} share capture time {entry.created_at.isoformat()}")
            seen[entry.created_at] = entry.id

        chain: List[BackupEntry] = [full]
        for entry in candidates:
            previous = chain[-1]
            if entry.base_id != previous.id:
                raise ChainBroken(
                    f"{entry.id} is based on {entry.base_id or 'nothing'}, expected {previous.id}"
                )
            _require_usable(entry)
            chain.append(entry)
        return Chain(tuple(chain))


__all__ = ["ChainResolver"]
