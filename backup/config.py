"""Immutable runtime configuration built once from merged settings."""
from __future__ import annotations

import logging
import stat
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

from core.db import build_connect_kwargs
from core.logging_utils import parse_level
from core.settings import merge_defaults

from .errors import ConfigInvalid
from .retention import RetentionPolicy

LOGGER = logging.getLogger("mariadb_backup.config")

BACKUP_TYPES = ("full", "incremental", "binlog")
PITR_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True, slots=True)
class ConnectionConfig:
    user: str = "root"
    password: str = ""
    host: str = "127.0.0.1"
    port: int = 3306
    defaults_file: Optional[Path] = None
    datadir: Path = Path("/var/lib/mysql")
    service: str = "mariadb"
    os_user: str = "mysql"
    os_group: str = "mysql"

    def connect_kwargs(self, *, connect_timeout: int = 10) -> dict:
        return build_connect_kwargs(
            user=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            defaults_file=self.defaults_file,
            connect_timeout=connect_timeout,
        )


@dataclass(frozen=True, slots=True)
class ToolPaths:
    mariabackup: str = "mariabackup"
    mysqlbinlog: str = "mysqlbinlog"
    mysql: str = "mysql"


@dataclass(frozen=True, slots=True)
class CaptureOptions:
    compress: bool = False
    compress_threads: int = 4
    encrypt: bool = False
    encrypt_key_file: Optional[Path] = None
    encrypt_algorithm: str = "AES256"
    parallel: int = 4
    throttle_io: Optional[int] = None
    min_disk_space_pct: int = 5
    use_read_lock: bool = True
    lock_wait_timeout_s: int = 60
    lock_grace_s: float = 2.0
    test_recovery: bool = False


@dataclass(frozen=True, slots=True)
class BinlogOptions:
    max_days: int = 2
    estimate_statements: bool = True


@dataclass(frozen=True, slots=True)
class RestoreOptions:
    force: bool = False
    health_timeout_s: float = 30.0
    health_interval_s: float = 5.0


@dataclass(frozen=True, slots=True)
class NotificationConfig:
    webhook_url: Optional[str] = None
    send_webhook: bool = False
    slack_webhook: Optional[str] = None
    email: Optional[str] = None
    timeout_s: float = 10.0


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    file: Optional[Path] = None
    level: str = "INFO"


@dataclass(frozen=True, slots=True)
class BackupConfig:
    backup_dir: Path
    backup_type: str = "full"
    temp_dir: Path = Path("/tmp")
    dry_run: bool = False
    ignore_errors: bool = False
    strict_binlog_coverage: bool = False
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    tools: ToolPaths = field(default_factory=ToolPaths)
    capture: CaptureOptions = field(default_factory=CaptureOptions)
    binlog: BinlogOptions = field(default_factory=BinlogOptions)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    restore: RestoreOptions = field(default_factory=RestoreOptions)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ----------------------------------------------------------------------
def _int(value: Any, name: str, *, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ConfigInvalid(f"{name} must be an integer: {value!r}")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigInvalid(f"{name} must be an integer: {value!r}") from exc
    if number < minimum:
        raise ConfigInvalid(f"{name} must be >= {minimum}: {number}")
    return number


def _float(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigInvalid(f"{name} must be a number: {value!r}") from exc
    if number < 0:
        raise ConfigInvalid(f"{name} must not be negative: {number}")
    return number


def _optional_path(value: Any) -> Optional[Path]:
    if value in (None, ""):
        return None
    return Path(str(value)).expanduser()


def _warn_permissions(path: Path, allowed: tuple, label: str) -> None:
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except OSError:
        return
    if mode not in allowed:
        LOGGER.warning(
            "%s %s has insecure permissions: %s, should be %s",
            label,
            path,
            oct(mode)[2:],
            " or ".join(oct(item)[2:] for item in allowed),
        )


def parse_pitr_time(value: str) -> datetime:
    try:
        return datetime.strptime(str(value).strip(), PITR_TIME_FORMAT)
    except ValueError as exc:
        raise ConfigInvalid(f"Invalid PITR datetime {value!r}, expected YYYY-MM-DD HH:MM:SS") from exc


def build_config(settings: Mapping[str, Any]) -> BackupConfig:
    """Validate merged *settings* and freeze them into a :class:`BackupConfig`."""

    data = merge_defaults(settings)
    mysql = data["mysql"]
    capture = data["capture"]
    binlog = data["binlog"]
    retention = data["retention"]
    restore = data["restore"]
    notifications = data["notifications"]
    log_settings = data["logging"]

    backup_dir = data.get("backup_dir")
    if not backup_dir:
        raise ConfigInvalid("backup_dir is required")

    backup_type = str(data.get("type") or "").lower()
    if backup_type not in BACKUP_TYPES:
        raise ConfigInvalid(f"Invalid backup type: {backup_type}. Must be one of: {', '.join(BACKUP_TYPES)}")

    defaults_file = _optional_path(mysql.get("defaults_file"))
    user = str(mysql.get("user") or "")
    password = str(mysql.get("password") or "")
    if defaults_file is None:
        if not user:
            raise ConfigInvalid("MySQL user is required")
    else:
        if password:
            raise ConfigInvalid("An explicit password and a defaults file are mutually exclusive")
        if not defaults_file.is_file():
            raise ConfigInvalid(f"MySQL defaults file not found: {defaults_file}")
        _warn_permissions(defaults_file, (0o600,), "MySQL defaults file")

    encrypt = bool(capture.get("encrypt"))
    key_file = _optional_path(capture.get("encrypt_key_file"))
    if encrypt:
        if key_file is None:
            raise ConfigInvalid("Encryption key file is required when encryption is enabled")
        if not key_file.is_file():
            raise ConfigInvalid(f"Encryption key file not found: {key_file}")
        _warn_permissions(key_file, (0o400, 0o600), "Encryption key file")

    throttle = capture.get("throttle_io")
    if throttle not in (None, ""):
        throttle = _int(throttle, "throttle_io", minimum=1)
        if throttle > 10:
            raise ConfigInvalid(f"Throttle IO must be between 1-10: {throttle}")
    else:
        throttle = None

    level = str(log_settings.get("level") or "INFO").upper()
    try:
        parse_level(level)
    except ValueError as exc:
        raise ConfigInvalid(str(exc)) from exc

    return BackupConfig(
        backup_dir=Path(str(backup_dir)).expanduser(),
        backup_type=backup_type,
        temp_dir=Path(str(data.get("temp_dir") or "/tmp")).expanduser(),
        dry_run=bool(data.get("dry_run")),
        ignore_errors=bool(data.get("ignore_errors")),
        strict_binlog_coverage=bool(data["pitr"].get("strict_coverage")),
        connection=ConnectionConfig(
            user=user,
            password=password,
            host=str(mysql.get("host") or "127.0.0.1"),
            port=_int(mysql.get("port"), "mysql.port", minimum=1),
            defaults_file=defaults_file,
            datadir=Path(str(mysql.get("datadir") or "/var/lib/mysql")),
            service=str(mysql.get("service") or "mariadb"),
            os_user=str(mysql.get("os_user") or "mysql"),
            os_group=str(mysql.get("os_group") or "mysql"),
        ),
        tools=ToolPaths(
            mariabackup=str(data["tools"].get("mariabackup") or "mariabackup"),
            mysqlbinlog=str(data["tools"].get("mysqlbinlog") or "mysqlbinlog"),
            mysql=str(data["tools"].get("mysql") or "mysql"),
        ),
        capture=CaptureOptions(
            compress=bool(capture.get("compress")),
            compress_threads=_int(capture.get("compress_threads"), "compress_threads", minimum=1),
            encrypt=encrypt,
            encrypt_key_file=key_file,
            encrypt_algorithm=str(capture.get("encrypt_algorithm") or "AES256"),
            parallel=_int(capture.get("parallel"), "parallel", minimum=1),
            throttle_io=throttle,
            min_disk_space_pct=_int(capture.get("min_disk_space_pct"), "min_disk_space_pct"),
            use_read_lock=bool(capture.get("use_read_lock")),
            lock_wait_timeout_s=_int(capture.get("lock_wait_timeout_s"), "lock_wait_timeout_s", minimum=1),
            lock_grace_s=_float(capture.get("lock_grace_s"), "lock_grace_s"),
            test_recovery=bool(capture.get("test_recovery")),
        ),
        binlog=BinlogOptions(
            max_days=_int(binlog.get("max_days"), "binlog.max_days"),
            estimate_statements=bool(binlog.get("estimate_statements")),
        ),
        retention=RetentionPolicy(
            max_age_days=_int(retention.get("days"), "retention.days"),
            keep_full=_int(retention.get("full"), "retention.full"),
            keep_incremental=_int(retention.get("incremental"), "retention.incremental"),
            keep_binlog=_int(retention.get("binlog"), "retention.binlog"),
        ),
        restore=RestoreOptions(
            force=bool(restore.get("force")),
            health_timeout_s=_float(restore.get("health_timeout_s"), "restore.health_timeout_s"),
            health_interval_s=_float(restore.get("health_interval_s"), "restore.health_interval_s"),
        ),
        notifications=NotificationConfig(
            webhook_url=notifications.get("webhook_url") or None,
            send_webhook=bool(notifications.get("send_webhook")),
            slack_webhook=notifications.get("slack_webhook") or None,
            email=notifications.get("email") or None,
            timeout_s=_float(notifications.get("timeout_s", 10), "notifications.timeout_s"),
        ),
        logging=LoggingConfig(file=_optional_path(log_settings.get("file")), level=level),
    )


__all__ = [
    "BACKUP_TYPES",
    "BackupConfig",
    "BinlogOptions",
    "CaptureOptions",
    "ConnectionConfig",
    "LoggingConfig",
    "NotificationConfig",
    "PITR_TIME_FORMAT",
    "RestoreOptions",
    "ToolPaths",
    "build_config",
    "parse_pitr_time",
]
