"""Install the recurring backup schedule into the invoking user's crontab."""
from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import List, Optional, Sequence

from core.process import Command, CommandRunner

from .config import BackupConfig
from .errors import ConfigInvalid, ToolInvocationFailed
from .tools import run_checked

LOGGER = logging.getLogger("mariadb_backup.schedule")

SCHEDULE = (
    ("0 1 * * 0", "full"),
    ("0 1 * * 1-6", "incremental"),
    ("0 * * * *", "binlog"),
)


def common_arguments(config: BackupConfig, config_file: Optional[Path] = None) -> List[str]:
    """Arguments repeated on every scheduled invocation.

    Passwords are never written into the crontab; use a settings file or a
    MySQL defaults file instead.
    """

    if config_file is not None:
        return ["--config", str(config_file)]
    conn = config.connection
    args = ["--backup-dir", str(config.backup_dir)]
    if conn.defaults_file is not None:
        args.extend(["--defaults-file", str(conn.defaults_file)])
    else:
        if conn.password:
            raise ConfigInvalid(
                "Scheduled backups cannot carry an explicit password; use --config or --defaults-file"
            )
        args.extend(["--mysql-user", conn.user, "--mysql-host", conn.host, "--mysql-port", str(conn.port)])
    if config.capture.compress:
        args.append("--compress")
    if config.capture.encrypt:
        args.extend(["--encrypt", "--encrypt-key-file", str(config.capture.encrypt_key_file)])
    if config.logging.file is not None:
        args.extend(["--log-file", str(config.logging.file)])
    args.extend(["--log-level", config.logging.level])
    notifications = config.notifications
    if notifications.send_webhook and notifications.webhook_url:
        args.extend(["--send-webhook", "--webhook", notifications.webhook_url])
    if notifications.slack_webhook:
        args.extend(["--slack-webhook", notifications.slack_webhook])
    if notifications.email:
        args.extend(["--email", notifications.email])
    return args


def render_cron_lines(program: str, arguments: Sequence[str]) -> List[str]:
    common = " ".join(shlex.quote(arg) for arg in arguments)
    lines = []
    for when, backup_type in SCHEDULE:
        line = f"{when} {shlex.quote(program)} --type {backup_type}"
        if common:
            line = f"{line} {common}"
        lines.append(line)
    return lines


def merge_crontab(existing: str, program: str, lines: Sequence[str]) -> str:
    """Drop previous lines for *program* and append *lines*."""

    kept = [line for line in existing.splitlines() if line.strip() and program not in line]
    return "\n".join([*kept, *lines]) + "\n"


def install_schedule(
    config: BackupConfig,
    runner: CommandRunner,
    *,
    program: str,
    config_file: Optional[Path] = None,
    dry_run: bool = False,
) -> List[str]:
    lines = render_cron_lines(program, common_arguments(config, config_file))
    if dry_run:
        for line in lines:
            LOGGER.info("[DRY RUN] Would install cron line: %s", line)
        return lines

    current = runner.run(Command("crontab", ("-l",), label="crontab"))
    existing = current.stdout if current.ok else ""
    content = merge_crontab(existing, program, lines)
    try:
        run_checked(runner, Command("crontab", ("-",), label="crontab"), what="crontab install failed", input_text=content)
    except ToolInvocationFailed:
        LOGGER.error("Failed to install cronjobs")
        raise
    LOGGER.info("Cronjobs have been set up successfully")
    return lines


__all__ = ["SCHEDULE", "common_arguments", "install_schedule", "merge_crontab", "render_cron_lines"]
