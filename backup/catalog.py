"""Durable index of captured backup entries.

The catalog is backed by the backup directory itself: every entry lives in a
directory named ``<prefix>_<YYYYMMDDHHMMSS>`` with a ``backup_metadata.json``
sidecar, and two pointer files at the root name the latest full and
incremental captures. Directory scanning is an implementation detail of this
module; callers only use the methods below.

One orchestrator process per backup directory is assumed. Nothing here locks
the directory against a concurrent writer.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from core.paths import (
    LEGACY_METADATA_FILENAME,
    METADATA_FILENAME,
    directory_size,
    format_entry_name,
    get_pointer_path,
    human_size,
    parse_entry_name,
)

from .errors import EntryNotFound
from .types import BackupEntry, EntryKind, EntryState, PointerSlot

LOGGER = logging.getLogger("mariadb_backup.catalog")

_METADATA_VERSION = 1
_DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"
_LEGACY_KINDS = {"full": EntryKind.FULL, "incremental": EntryKind.INCREMENTAL, "binlog": EntryKind.BINLOG_SET}


def _entry_to_json(entry: BackupEntry, base_path: Optional[Path]) -> Dict[str, object]:
    return {
        "version": _METADATA_VERSION,
        "id": entry.id,
        "kind": entry.kind.value,
        "created_at": entry.created_at.isoformat(),
        "created": entry.created_at.strftime(_DISPLAY_FORMAT),
        "state": entry.state.value,
        "base_id": entry.base_id,
        "base_path": str(base_path) if base_path else None,
        "compressed": entry.compressed,
        "encrypted": entry.encrypted,
        "size_bytes": entry.size_bytes,
        "size_human": human_size(entry.size_bytes),
        "statement_count_estimate": entry.statement_count_estimate,
        "segments": list(entry.segments),
        "current_log": entry.current_log,
    }


def _parse_json_metadata(path: Path, directory: Path) -> BackupEntry:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError("metadata is not an object")
    kind = EntryKind(str(data["kind"]))
    created = datetime.fromisoformat(str(data["created_at"]))
    estimate = data.get("statement_count_estimate")
    return BackupEntry(
        id=directory.name,
        kind=kind,
        path=directory,
        created_at=created,
        base_id=data.get("base_id") or None,
        compressed=bool(data.get("compressed")),
        encrypted=bool(data.get("encrypted")),
        state=EntryState(str(data.get("state") or EntryState.CAPTURED.value)),
        size_bytes=int(data.get("size_bytes") or 0),
        statement_count_estimate=int(estimate) if estimate is not None else None,
        segments=tuple(str(item) for item in data.get("segments") or ()),
        current_log=data.get("current_log") or None,
    )


def _parse_legacy_metadata(path: Path, directory: Path) -> BackupEntry:
    """Read the ``Key: value`` text sidecar written by the older shell tool."""

    values: Dict[str, str] = {}
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        if ":" not in line:
            continue
        key, _, value = line.partition(":")
        values[key.strip().lower()] = value.strip()
    kind = _LEGACY_KINDS[values["backup type"].lower()]
    created = datetime.strptime(values["backup date"], _DISPLAY_FORMAT)
    base = values.get("base backup")
    return BackupEntry(
        id=directory.name,
        kind=kind,
        path=directory,
        created_at=created,
        base_id=Path(base).name if base else None,
        compressed=values.get("compression", "0") == "1",
        encrypted=values.get("encryption", "0") == "1",
        # The shell tool only wrote metadata after its verification passed.
        state=EntryState.VERIFIED,
        size_bytes=directory_size(directory),
        current_log=values.get("current log") or None,
    )


def _load_entry(directory: Path) -> Optional[BackupEntry]:
    parsed = parse_entry_name(directory.name)
    if parsed is None:
        return None
    dir_kind, dir_created = parsed
    json_path = directory / METADATA_FILENAME
    legacy_path = directory / LEGACY_METADATA_FILENAME
    error: Optional[str] = None
    try:
        if json_path.exists():
            entry = _parse_json_metadata(json_path, directory)
        elif legacy_path.exists():
            entry = _parse_legacy_metadata(legacy_path, directory)
        else:
            entry = None
            error = "metadata missing"
    except (OSError, ValueError, KeyError, TypeError) as exc:
        entry = None
        error = f"metadata unreadable: {exc}"
    if entry is not None and entry.kind.value != dir_kind:
        error = f"metadata kind {entry.kind.value} does not match directory"
        entry = None
    if entry is None:
        LOGGER.warning("Catalog entry %s degraded: %s", directory.name, error)
        return BackupEntry(
            id=directory.name,
            kind=EntryKind.UNKNOWN,
            path=directory,
            created_at=dir_created,
            error=error,
        )
    return entry


class BackupCatalog:
    """Index over the entries stored in one backup directory."""

    def __init__(self, backup_dir: Path) -> None:
        self._backup_dir = Path(backup_dir)
        self._entries: Optional[Dict[str, BackupEntry]] = None

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    # ------------------------------------------------------------------
    def refresh(self) -> None:
        entries: Dict[str, BackupEntry] = {}
        if self._backup_dir.is_dir():
            for child in sorted(self._backup_dir.iterdir()):
                if not child.is_dir():
                    continue
                entry = _load_entry(child)
                if entry is not None:
                    entries[entry.id] = entry
        self._entries = entries

    def _index(self) -> Dict[str, BackupEntry]:
        if self._entries is None:
            self.refresh()
        assert self._entries is not None
        return self._entries

    # ------------------------------------------------------------------
    def list(
        self,
        kind: Optional[EntryKind] = None,
        *,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
    ) -> List[BackupEntry]:
        """Entries ordered by ``(created_at, id)``; *after*/*before* are exclusive."""

        selected: Iterable[BackupEntry] = self._index().values()
        if kind is not None:
            selected = (entry for entry in selected if entry.kind == kind)
        if after is not None:
            selected = (entry for entry in selected if entry.created_at > after)
        if before is not None:
            selected = (entry for entry in selected if entry.created_at < before)
        return sorted(selected, key=lambda entry: entry.sort_key)

    def get(self, entry_id: str) -> BackupEntry:
        try:
            return self._index()[entry_id]
        except KeyError as exc:
            raise EntryNotFound(f"Backup entry not found: {entry_id}") from exc

    def find(self, reference: str) -> BackupEntry:
        """Look up an entry by id or by a path whose last component is the id."""

        text = str(reference).rstrip("/").rstrip(os.sep)
        return self.get(Path(text).name if text else text)

    def latest(self, kind: EntryKind) -> Optional[BackupEntry]:
        entries = self.list(kind)
        return entries[-1] if entries else None

    # ------------------------------------------------------------------
    def allocate(self, kind: EntryKind, now: datetime) -> Tuple[str, Path, datetime]:
        """Reserve a unique, monotonic id for a new capture of *kind*."""

        created = now.replace(microsecond=0)
        newest = max((entry.created_at for entry in self._index().values()), default=None)
        if newest is not None and created <= newest:
            created = newest.replace(microsecond=0) + timedelta(seconds=1)
        while True:
            entry_id = format_entry_name(kind.value, created)
            path = self._backup_dir / entry_id
            if entry_id not in self._index() and not path.exists():
                return entry_id, path, created
            created += timedelta(seconds=1)

    def record(self, entry: BackupEntry) -> str:
        """Persist *entry*'s sidecar and return its id."""

        base_path = self._backup_dir / entry.base_id if entry.base_id else None
        payload = _entry_to_json(entry, base_path)
        entry.path.mkdir(parents=True, exist_ok=True)
        target = entry.path / METADATA_FILENAME
        tmp = target.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
        os.replace(tmp, target)
        self._index()[entry.id] = entry
        return entry.id

    def update_state(self, entry_id: str, state: EntryState) -> BackupEntry:
        entry = self.get(entry_id).with_state(state)
        if entry.kind != EntryKind.UNKNOWN:
            self.record(entry)
        return entry

    def remove(self, entry_id: str) -> BackupEntry:
        entry = self.get(entry_id)
        shutil.rmtree(entry.path, ignore_errors=True)
        self._index().pop(entry_id, None)
        for slot in PointerSlot:
            if self.get_pointer(slot) == entry_id:
                get_pointer_path(self._backup_dir, slot.value).unlink(missing_ok=True)
        return entry

    # ------------------------------------------------------------------
    def set_pointer(self, slot: PointerSlot, entry_id: str) -> None:
        entry = self.get(entry_id)
        if entry.kind not in (EntryKind.FULL, EntryKind.INCREMENTAL):
            raise ValueError(f"{entry_id} cannot be referenced by {slot.value}")
        if entry.state == EntryState.CAPTURED:
            raise ValueError(f"{entry_id} is not verified")
        path = get_pointer_path(self._backup_dir, slot.value)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(f"{entry.path}\n", encoding="utf-8")
        os.replace(tmp, path)

    def get_pointer(self, slot: PointerSlot) -> Optional[str]:
        path = get_pointer_path(self._backup_dir, slot.value)
        try:
            text = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if not text:
            return None
        return Path(text.rstrip("/")).name or None

    def pointer_targets(self) -> Dict[str, PointerSlot]:
        targets: Dict[str, PointerSlot] = {}
        for slot in PointerSlot:
            entry_id = self.get_pointer(slot)
            if entry_id:
                targets.setdefault(entry_id, slot)
        return targets


__all__ = ["BackupCatalog"]
