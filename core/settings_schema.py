from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping


_ALLOWED_STRUCTURE: Dict[str, Any] = {
    "mysql": {
        "user",
        "password",
        "host",
        "port",
        "datadir",
        "defaults_file",
        "service",
        "os_user",
        "os_group",
    },
    "tools": {"mariabackup", "mysqlbinlog", "mysql"},
    "capture": {
        "compress",
        "compress_threads",
        "encrypt",
        "encrypt_key_file",
        "encrypt_algorithm",
        "parallel",
        "throttle_io",
        "min_disk_space_pct",
        "use_read_lock",
        "lock_wait_timeout_s",
        "lock_grace_s",
        "test_recovery",
    },
    "binlog": {"max_days", "estimate_statements"},
    "retention": {"days", "full", "incremental", "binlog"},
    "restore": {"force", "health_timeout_s", "health_interval_s"},
    "pitr": {"strict_coverage"},
    "notifications": "*",
    "logging": {"file", "level"},
    "backup_dir": None,
    "type": None,
    "temp_dir": None,
    "dry_run": None,
    "ignore_errors": None,
    "version": None,
}


@dataclass(slots=True)
class SettingsValidator:
    schema: Mapping[str, Any]

    def unknown_keys(self, payload: Mapping[str, Any]) -> Iterable[str]:
        return sorted(self._iter_unknown(payload, self.schema, path=""))

    def _iter_unknown(self, payload: Mapping[str, Any], schema: Mapping[str, Any], *, path: str) -> Iterable[str]:
        for key, value in payload.items():
            if key not in schema:
                yield f"{path}{key}"
                continue
            rule = schema[key]
            if rule is None:
                continue
            if rule == "*":
                continue
            if isinstance(rule, set):
                if not isinstance(value, Mapping):
                    continue
                for sub in value.keys():
                    if sub not in rule:
                        yield f"{path}{key}.{sub}"
                continue
            if isinstance(rule, Mapping) and isinstance(value, Mapping):
                next_path = f"{path}{key}."
                yield from self._iter_unknown(value, rule, path=next_path)


SETTINGS_VALIDATOR = SettingsValidator(_ALLOWED_STRUCTURE)

__all__ = ["SETTINGS_VALIDATOR", "SettingsValidator"]
