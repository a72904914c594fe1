from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .settings_schema import SETTINGS_VALIDATOR

__all__ = [
    "DEFAULT_SETTINGS",
    "SETTINGS_VERSION",
    "SettingsLoadError",
    "apply_overrides",
    "load_settings",
    "merge_defaults",
]

LOGGER = logging.getLogger("mariadb_backup.settings")

SETTINGS_VERSION = 1


class SettingsLoadError(RuntimeError):
    """Raised when a settings file exists but cannot be used."""


DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "backup_dir": "/var/backup/mariadb",
    "type": "full",
    "temp_dir": "/tmp",
    "dry_run": False,
    "ignore_errors": False,
    "mysql": {
        "user": "root",
        "password": "",
        "host": "127.0.0.1",
        "port": 3306,
        "datadir": "/var/lib/mysql",
        "defaults_file": None,
        "service": "mariadb",
        "os_user": "mysql",
        "os_group": "mysql",
    },
    "tools": {
        "mariabackup": "mariabackup",
        "mysqlbinlog": "mysqlbinlog",
        "mysql": "mysql",
    },
    "capture": {
        "compress": False,
        "compress_threads": 4,
        "encrypt": False,
        "encrypt_key_file": None,
        "encrypt_algorithm": "AES256",
        "parallel": 4,
        "throttle_io": None,
        "min_disk_space_pct": 5,
        "use_read_lock": True,
        "lock_wait_timeout_s": 60,
        "lock_grace_s": 2.0,
        "test_recovery": False,
    },
    "binlog": {
        "max_days": 2,
        "estimate_statements": True,
    },
    "retention": {
        "days": 7,
        "full": 4,
        "incremental": 14,
        "binlog": 0,
    },
    "restore": {
        "force": False,
        "health_timeout_s": 30,
        "health_interval_s": 5,
    },
    "pitr": {
        "strict_coverage": False,
    },
    "notifications": {
        "webhook_url": None,
        "send_webhook": False,
        "slack_webhook": None,
        "email": None,
        "timeout_s": 10,
    },
    "logging": {
        "file": None,
        "level": "INFO",
    },
}


def merge_defaults(data: Mapping[str, Any]) -> Dict[str, Any]:
    def _merge(default: Dict[str, Any], payload: Mapping[str, Any]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in default.items():
            if isinstance(value, dict):
                current = payload.get(key)
                if isinstance(current, Mapping):
                    result[key] = _merge(value, current)
                else:
                    result[key] = _merge(value, {})
            elif isinstance(value, list):
                current = payload.get(key)
                result[key] = list(current) if isinstance(current, list) else list(value)
            else:
                result[key] = payload.get(key, value)
        for key, value in payload.items():
            if key not in result:
                result[key] = copy.deepcopy(value)
        return result

    return _merge(DEFAULT_SETTINGS, data or {})


def apply_overrides(settings: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Apply dotted-key overrides (``"mysql.host": "db1"``) on top of *settings*.

    ``None`` values are skipped so unset CLI flags never mask file settings.
    """

    result = copy.deepcopy(dict(settings))
    for dotted, value in overrides.items():
        if value is None:
            continue
        target = result
        parts = dotted.split(".")
        for part in parts[:-1]:
            node = target.get(part)
            if not isinstance(node, dict):
                node = {}
                target[part] = node
            target = node
        target[parts[-1]] = value
    return result


def _log_unknown_keys(settings: Mapping[str, Any]) -> None:
    unknown = list(SETTINGS_VALIDATOR.unknown_keys(settings))
    if unknown:
        LOGGER.warning("Ignoring unknown settings keys: %s", ", ".join(unknown))


def load_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load a JSON settings file and merge it over the defaults.

    Without *path* the defaults are returned unchanged.
    """

    data: Dict[str, Any] = {}
    if path is not None:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except FileNotFoundError as exc:
            raise SettingsLoadError(f"Configuration file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise SettingsLoadError(f"Configuration file {path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise SettingsLoadError(f"Cannot read configuration file {path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise SettingsLoadError(f"Configuration file {path} must contain a JSON object")
        data = loaded
        LOGGER.info("Loaded configuration from %s", path)
    _log_unknown_keys(data)
    merged = merge_defaults(data)
    merged["version"] = SETTINGS_VERSION
    return merged
