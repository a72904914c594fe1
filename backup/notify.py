"""Fan out operator notifications to webhook, Slack and email."""
from __future__ import annotations

import logging
import socket
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

import requests

from core.process import Command, CommandRunner

from .config import NotificationConfig, PITR_TIME_FORMAT

LOGGER = logging.getLogger("mariadb_backup.notify")


class Notifier:
    """Deliver a message to every configured channel.

    Delivery problems are logged and swallowed; a notification must never
    turn a finished operation into a failure.
    """

    def __init__(
        self,
        config: NotificationConfig,
        runner: CommandRunner,
        *,
        session: Optional[requests.Session] = None,
        hostname: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._runner = runner
        self._session = session or requests.Session()
        self._hostname = hostname or socket.gethostname()
        self._clock = clock

    @property
    def enabled(self) -> bool:
        cfg = self._config
        return bool((cfg.send_webhook and cfg.webhook_url) or cfg.slack_webhook or cfg.email)

    def _post(self, url: str, payload: dict, channel: str) -> bool:
        try:
            response = self._session.post(url, json=payload, timeout=self._config.timeout_s)
        except requests.RequestException as exc:
            LOGGER.warning("Failed to send %s notification: %s", channel, exc)
            return False
        if response.status_code >= 400:
            LOGGER.warning("Failed to send %s notification: HTTP %s", channel, response.status_code)
            return False
        return True

    def _mail(self, subject: str, body: str) -> bool:
        command = Command("mail", ("-s", subject, str(self._config.email)), label="mail")
        result = self._runner.run(command, input_text=body)
        if result.returncode == 127:
            LOGGER.warning("mail command not found, cannot send email notification")
            return False
        if not result.ok:
            LOGGER.warning("Failed to send email notification: %s", result.stderr_tail())
            return False
        return True

    def send(self, message: str) -> List[str]:
        """Send *message*; return the channels that accepted it."""

        cfg = self._config
        timestamp = self._clock().strftime(PITR_TIME_FORMAT)
        formatted = f"[{timestamp}] [{self._hostname}] {message}"
        LOGGER.debug("Sending notification: %s", message)
        delivered: List[str] = []
        if cfg.send_webhook and cfg.webhook_url:
            payload = {"message": formatted, "timestamp": timestamp, "hostname": self._hostname}
            if self._post(cfg.webhook_url, payload, "webhook"):
                delivered.append("webhook")
        if cfg.slack_webhook:
            if self._post(cfg.slack_webhook, {"text": formatted}, "Slack"):
                delivered.append("slack")
        if cfg.email:
            if self._mail(f"MariaDB Backup: {message}", formatted + "\n"):
                delivered.append("email")
        return delivered

    def send_report(self, report_path: Path) -> bool:
        if not self._config.email:
            return False
        subject = f"MariaDB Backup Report - {self._clock().strftime('%Y-%m-%d')}"
        try:
            body = report_path.read_text(encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Failed to read backup report %s: %s", report_path, exc)
            return False
        LOGGER.info("Sending backup report via email to %s", self._config.email)
        return self._mail(subject, body)


__all__ = ["Notifier"]
