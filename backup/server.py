"""Database server lifecycle through the service manager."""
from __future__ import annotations

import logging
import time
from typing import Callable

from core.process import Command, CommandRunner

LOGGER = logging.getLogger("mariadb_backup.server")


class ServerController:
    """Stop, start and health-check the database service with ``systemctl``."""

    def __init__(
        self,
        runner: CommandRunner,
        service: str = "mariadb",
        *,
        systemctl: str = "systemctl",
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._runner = runner
        self._service = service
        self._systemctl = systemctl
        self._sleep = sleep
        self._monotonic = monotonic

    def _command(self, *args: str) -> Command:
        return Command(self._systemctl, (*args, self._service), label="service")

    def stop(self) -> bool:
        result = self._runner.run(self._command("stop"))
        if not result.ok:
            LOGGER.error("systemctl stop %s failed: %s", self._service, result.stderr_tail())
        return result.ok

    def start(self) -> bool:
        result = self._runner.run(self._command("start"))
        if not result.ok:
            LOGGER.error("systemctl start %s failed: %s", self._service, result.stderr_tail())
        return result.ok

    def is_active(self) -> bool:
        return self._runner.run(self._command("is-active", "--quiet")).ok

    def wait_healthy(self, timeout_s: float, interval_s: float) -> bool:
        """Poll :meth:`is_active` every *interval_s* until *timeout_s* elapses."""

        deadline = self._monotonic() + max(timeout_s, 0.0)
        while True:
            if self.is_active():
                return True
            if self._monotonic() >= deadline:
                return False
            self._sleep(max(interval_s, 0.0))


__all__ = ["ServerController"]
