"""Command line entry point for ``mariadb-backup``."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.logging_utils import configure_logging
from core.paths import human_size
from core.settings import SettingsLoadError, apply_overrides, load_settings

from . import __version__
from .api import BackupService
from .config import BACKUP_TYPES, build_config, parse_pitr_time
from .errors import BackupError, ConfigInvalid
from .types import BackupEntry

LOGGER = logging.getLogger("mariadb_backup.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mariadb-backup",
        description="Full, incremental and binary log backups for MariaDB with point-in-time recovery",
    )
    basic = parser.add_argument_group("basic options")
    basic.add_argument("--backup-dir", default=None, help="Backup directory")
    basic.add_argument("--type", dest="backup_type", choices=BACKUP_TYPES, default=None, help="Backup type")
    basic.add_argument("--retention", type=int, default=None, help="Retention period in days")
    basic.add_argument("--retention-full", type=int, default=None, help="Number of full backups to keep")
    basic.add_argument("--retention-incr", type=int, default=None, help="Number of incremental backups to keep")
    basic.add_argument("--retention-binlog", type=int, default=None, help="Number of binary log sets to keep")
    basic.add_argument("--compress", action="store_const", const=True, default=None, help="Compress backups")
    basic.add_argument("--compress-threads", type=int, default=None, help="Number of compression threads")
    basic.add_argument("--encrypt", action="store_const", const=True, default=None, help="Encrypt backups")
    basic.add_argument("--encrypt-key-file", default=None, help="Path to encryption key file")
    basic.add_argument("--parallel", type=int, default=None, help="Number of parallel threads")
    basic.add_argument("--dry-run", action="store_const", const=True, default=None, help="Show what would be done")
    basic.add_argument("--temp-dir", default=None, help="Temporary directory for operations")
    basic.add_argument("--throttle-io", type=int, default=None, help="Limit I/O with nice/ionice (1-10)")

    conn = parser.add_argument_group("connection options")
    conn.add_argument("--mysql-user", default=None)
    conn.add_argument("--mysql-password", default=None)
    conn.add_argument("--mysql-host", default=None)
    conn.add_argument("--mysql-port", type=int, default=None)
    conn.add_argument("--mysql-datadir", default=None)
    conn.add_argument("--defaults-file", default=None, help="MySQL defaults file with credentials")

    restore = parser.add_argument_group("restore options")
    restore.add_argument("--restore", dest="restore_path", default=None, help="Restore from backup id or path")
    restore.add_argument("--pitr", default=None, metavar="DATETIME", help="Point-in-time recovery target")
    restore.add_argument("--pitr-only", default=None, metavar="DATETIME", help="Replay binary logs without restoring")
    restore.add_argument("--test-recovery", action="store_const", const=True, default=None)
    restore.add_argument("--force", action="store_const", const=True, default=None)
    restore.add_argument("--ignore-errors", action="store_const", const=True, default=None)

    notify = parser.add_argument_group("notification options")
    notify.add_argument("--webhook", default=None, help="Webhook URL")
    notify.add_argument("--send-webhook", action="store_const", const=True, default=None)
    notify.add_argument("--slack-webhook", default=None)
    notify.add_argument("--email", default=None)

    misc = parser.add_argument_group("configuration options")
    misc.add_argument("--config", type=Path, default=None, help="Load settings from a JSON file")
    misc.add_argument("--setup-cron", action="store_true", help="Install cron jobs for regular backups")
    misc.add_argument("--list", action="store_true", help="List catalog entries")
    misc.add_argument("--log-file", default=None)
    misc.add_argument("--log-level", default=None, help="DEBUG, INFO, WARN or ERROR")
    misc.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "backup_dir": args.backup_dir,
        "type": args.backup_type,
        "temp_dir": args.temp_dir,
        "dry_run": args.dry_run,
        "ignore_errors": args.ignore_errors,
        "retention.days": args.retention,
        "retention.full": args.retention_full,
        "retention.incremental": args.retention_incr,
        "retention.binlog": args.retention_binlog,
        "capture.compress": args.compress,
        "capture.compress_threads": args.compress_threads,
        "capture.encrypt": args.encrypt,
        "capture.encrypt_key_file": args.encrypt_key_file,
        "capture.parallel": args.parallel,
        "capture.throttle_io": args.throttle_io,
        "capture.test_recovery": args.test_recovery,
        "mysql.user": args.mysql_user,
        "mysql.password": args.mysql_password,
        "mysql.host": args.mysql_host,
        "mysql.port": args.mysql_port,
        "mysql.datadir": args.mysql_datadir,
        "mysql.defaults_file": args.defaults_file,
        "restore.force": args.force,
        "notifications.webhook_url": args.webhook,
        "notifications.send_webhook": args.send_webhook,
        "notifications.slack_webhook": args.slack_webhook,
        "notifications.email": args.email,
        "logging.file": args.log_file,
        "logging.level": args.log_level,
    }


def format_entries(entries: List[BackupEntry]) -> str:
    if not entries:
        return "No backups found"
    lines = []
    for entry in entries:
        flags = [name for name, on in (("compressed", entry.compressed), ("encrypted", entry.encrypted)) if on]
        line = (
            f"{entry.id:<24} {entry.kind.value:<12} {entry.state.value:<9} "
            f"{entry.created_at:%Y-%m-%d %H:%M:%S} {human_size(entry.size_bytes):>8}"
        )
        if flags:
            line += f"  [{', '.join(flags)}]"
        if entry.error:
            line += f"  ({entry.error})"
        lines.append(line)
    return "\n".join(lines)


def _dispatch(service: BackupService, args: argparse.Namespace) -> None:
    if args.list:
        print(format_entries(service.list_entries()))
        return
    if args.setup_cron:
        program = str(Path(sys.argv[0]).resolve())
        for line in service.setup_schedule(program=program, config_file=args.config):
            print(line)
        return
    if args.pitr and not (args.restore_path or args.pitr_only):
        raise ConfigInvalid("--pitr requires --restore; use --pitr-only to replay without a restore")
    service.preflight()
    if args.pitr_only:
        target = parse_pitr_time(args.pitr_only)
        service.pitr(target, reference=args.restore_path, pitr_only=True)
        return
    if args.restore_path:
        if args.pitr:
            service.pitr(parse_pitr_time(args.pitr), reference=args.restore_path)
        else:
            service.restore(args.restore_path)
        return
    service.capture()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = apply_overrides(load_settings(args.config), _overrides(args))
        config = build_config(settings)
    except (SettingsLoadError, ConfigInvalid) as exc:
        configure_logging("INFO")
        LOGGER.error("%s", exc)
        return 1

    configure_logging(config.logging.level, config.logging.file)
    LOGGER.info("MariaDB backup v%s starting", __version__)
    LOGGER.info("Backup type: %s", config.backup_type)
    LOGGER.info("Backup directory: %s", config.backup_dir)
    if config.dry_run:
        LOGGER.info("Dry run: no changes will be made")

    service = BackupService(config)
    try:
        with service.guard("cli"):
            _dispatch(service, args)
    except (BackupError, OSError) as exc:
        LOGGER.error("%s", exc)
        return 1
    LOGGER.info("MariaDB backup v%s completed", __version__)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
