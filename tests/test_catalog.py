import json
from datetime import datetime

import pytest

from backup.catalog import BackupCatalog
from backup.errors import EntryNotFound
from backup.types import EntryKind, EntryState, PointerSlot
from core.paths import format_entry_name, parse_entry_name


def test_entry_names_round_trip_through_directory_convention():
    created = datetime(2025, 3, 4, 12, 0, 0)
    assert format_entry_name("full", created) == "full_20250304120000"
    assert format_entry_name("incremental", created) == "incr_20250304120000"
    assert format_entry_name("binlog", created) == "binlogs_20250304120000"
    assert parse_entry_name("incr_20250304120000") == ("incremental", created)
    assert parse_entry_name("logs") is None
    assert parse_entry_name("full_2025") is None


def test_record_persists_sidecar_and_reload_sees_it(catalog, seed):
    full = seed(EntryKind.FULL, datetime(2025, 1, 1, 1, 0, 0), compressed=True, size_bytes=2048)

    sidecar = json.loads((full.path / "backup_metadata.json").read_text(encoding="utf-8"))
    assert sidecar["kind"] == "full"
    assert sidecar["compressed"] is True
    assert sidecar["size_human"] == "2.0K"

    fresh = BackupCatalog(catalog.backup_dir)
    loaded = fresh.get(full.id)
    assert loaded.kind == EntryKind.FULL
    assert loaded.created_at == datetime(2025, 1, 1, 1, 0, 0)
    assert loaded.compressed is True
    assert loaded.state == EntryState.VERIFIED


def test_list_filters_and_orders_by_creation(catalog, seed):
    full = seed(EntryKind.FULL, datetime(2025, 1, 1, 1, 0, 0))
    second = seed(EntryKind.INCREMENTAL, datetime(2025, 1, 3, 1, 0, 0), base_id=None)
    first = seed(EntryKind.INCREMENTAL, datetime(2025, 1, 2, 1, 0, 0), base_id=full.id)

    assert [entry.id for entry in catalog.list()] == [full.id, first.id, second.id]
    assert [entry.id for entry in catalog.list(EntryKind.INCREMENTAL)] == [first.id, second.id]
    after = catalog.list(after=datetime(2025, 1, 2, 1, 0, 0))
    assert [entry.id for entry in after] == [second.id]
    before = catalog.list(before=datetime(2025, 1, 2, 1, 0, 0))
    assert [entry.id for entry in before] == [full.id]


def test_corrupt_metadata_is_listed_as_unknown(catalog, seed):
    good = seed(EntryKind.FULL, datetime(2025, 1, 1, 1, 0, 0))
    broken = catalog.backup_dir / "incr_20250102010000"
    broken.mkdir()
    (broken / "backup_metadata.json").write_text("{not json", encoding="utf-8")
    bare = catalog.backup_dir / "full_20250103010000"
    bare.mkdir()

    catalog.refresh()
    entries = {entry.id: entry for entry in catalog.list()}
    assert entries[good.id].kind == EntryKind.FULL
    assert entries["incr_20250102010000"].kind == EntryKind.UNKNOWN
    assert "unreadable" in entries["incr_20250102010000"].error
    assert entries["full_20250103010000"].kind == EntryKind.UNKNOWN
    assert entries["full_20250103010000"].created_at == datetime(2025, 1, 3, 1, 0, 0)


def test_legacy_text_metadata_is_read_as_verified(catalog):
    legacy = catalog.backup_dir / "incr_20250304130000"
    legacy.mkdir()
    (legacy / "backup_metadata.txt").write_text(
        "Backup Type: incremental\n"
        "Backup Date: 2025-03-04 13:00:00\n"
        "Base Backup: /var/backup/mariadb/full_20250304120000\n"
        "Compression: 1\n"
        "Encryption: 0\n",
        encoding="utf-8",
    )

    catalog.refresh()
    entry = catalog.get("incr_20250304130000")
    assert entry.kind == EntryKind.INCREMENTAL
    assert entry.base_id == "full_20250304120000"
    assert entry.compressed is True
    assert entry.encrypted is False
    assert entry.state == EntryState.VERIFIED


def test_get_and_find_unknown_ids_raise(catalog, seed):
    full = seed(EntryKind.FULL, datetime(2025, 1, 1, 1, 0, 0))
    assert catalog.find(str(full.path) + "/").id == full.id
    with pytest.raises(EntryNotFound):
        catalog.get("full_19990101000000")


def test_allocate_bumps_colliding_timestamps(catalog, seed):
    seed(EntryKind.FULL, datetime(2025, 1, 1, 1, 0, 0))
    entry_id, path, created = catalog.allocate(EntryKind.INCREMENTAL, datetime(2025, 1, 1, 1, 0, 0, 500))
    assert created == datetime(2025, 1, 1, 1, 0, 1)
    assert entry_id == "incr_20250101010001"
    assert path == catalog.backup_dir / entry_id


def test_pointers_store_paths_and_reject_unverified_entries(catalog, seed):
    full = seed(EntryKind.FULL, datetime(2025, 1, 1, 1, 0, 0))
    pending = seed(EntryKind.INCREMENTAL, datetime(2025, 1, 2, 1, 0, 0), base_id=full.id, state=EntryState.CAPTURED)
    binlogs = seed(EntryKind.BINLOG_SET, datetime(2025, 1, 2, 2, 0, 0), segments=["mysql-bin.000001"])

    assert catalog.get_pointer(PointerSlot.LAST_FULL) is None
    catalog.set_pointer(PointerSlot.LAST_FULL, full.id)
    pointer_file = catalog.backup_dir / "last_full_backup"
    assert pointer_file.read_text(encoding="utf-8").strip() == str(full.path)
    assert catalog.get_pointer(PointerSlot.LAST_FULL) == full.id

    with pytest.raises(ValueError):
        catalog.set_pointer(PointerSlot.LAST_INCREMENTAL, pending.id)
    with pytest.raises(ValueError):
        catalog.set_pointer(PointerSlot.LAST_INCREMENTAL, binlogs.id)
    assert catalog.pointer_targets() == {full.id: PointerSlot.LAST_FULL}


def test_remove_deletes_directory_and_clears_pointer(catalog, seed):
    full = seed(EntryKind.FULL, datetime(2025, 1, 1, 1, 0, 0))
    catalog.set_pointer(PointerSlot.LAST_FULL, full.id)

    catalog.remove(full.id)

    assert not full.path.exists()
    assert catalog.get_pointer(PointerSlot.LAST_FULL) is None
    with pytest.raises(EntryNotFound):
        catalog.get(full.id)


def test_update_state_rewrites_sidecar(catalog, seed):
    full = seed(EntryKind.FULL, datetime(2025, 1, 1, 1, 0, 0))
    catalog.update_state(full.id, EntryState.PREPARED)
    assert BackupCatalog(catalog.backup_dir).get(full.id).state == EntryState.PREPARED
