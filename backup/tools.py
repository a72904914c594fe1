"""Command descriptors for the external backup engine and MariaDB clients."""
from __future__ import annotations

import os
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from core.process import Command, CommandResult, CommandRunner

from .config import BackupConfig, PITR_TIME_FORMAT
from .errors import ConfigInvalid, ToolInvocationFailed


@contextmanager
def credentials_file(config: BackupConfig) -> Iterator[Optional[Path]]:
    """Yield a private ``[client]`` option file for explicit credentials.

    Nothing is written when a defaults file is configured; the caller then
    passes that file instead. The temporary file is removed on exit.
    """

    conn = config.connection
    if conn.defaults_file is not None:
        yield None
        return
    config.temp_dir.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix="mariadb_backup_", suffix=".cnf", dir=str(config.temp_dir))
    path = Path(name)
    try:
        os.fchmod(fd, 0o600)
        lines = ["[client]", f"user={conn.user}"]
        if conn.password:
            escaped = conn.password.replace("\\", "\\\\").replace('"', '\\"')
            lines.append(f'password="{escaped}"')
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")
        yield path
    finally:
        path.unlink(missing_ok=True)


def run_checked(runner: CommandRunner, command: Command, *, what: str, **kwargs) -> CommandResult:
    result = runner.run(command, **kwargs)
    if not result.ok:
        raise ToolInvocationFailed(
            what,
            command=command.display(),
            returncode=result.returncode,
            stderr=result.stderr_tail(),
        )
    return result


class ToolCommands:
    """Build :class:`Command` values from an immutable configuration."""

    def __init__(self, config: BackupConfig, credentials: Optional[Path] = None) -> None:
        self._config = config
        self._credentials = credentials

    # ------------------------------------------------------------------
    def _auth_args(self) -> List[str]:
        conn = self._config.connection
        # Option-file arguments must come first on the command line.
        if conn.defaults_file is not None:
            args = [f"--defaults-file={conn.defaults_file}"]
        elif self._credentials is not None:
            args = [f"--defaults-extra-file={self._credentials}"]
        else:
            args = [f"--user={conn.user}"]
        args.extend([f"--host={conn.host}", f"--port={conn.port}"])
        return args

    def _throttle_prefix(self) -> tuple:
        level = self._config.capture.throttle_io
        if not level:
            return ()
        nice_level = 20 - level * 2
        return ("nice", "-n", str(nice_level), "ionice", "-c2", f"-n{min(level, 7)}")

    def _parallel_args(self) -> List[str]:
        threads = self._config.capture.parallel
        return [f"--parallel={threads}"] if threads > 1 else []

    def _engine(self, args: List[str], label: str) -> Command:
        return Command(
            self._config.tools.mariabackup,
            tuple(args + self._parallel_args()),
            prefix=self._throttle_prefix(),
            label=label,
        )

    # ------------------------------------------------------------------
    def backup(self, target_dir: Path, *, base_dir: Optional[Path] = None) -> Command:
        capture = self._config.capture
        args = self._auth_args() + ["--backup", f"--target-dir={target_dir}"]
        if base_dir is not None:
            args.append(f"--incremental-basedir={base_dir}")
        if capture.compress:
            args.extend(["--compress", f"--compress-threads={capture.compress_threads}"])
        if capture.encrypt:
            args.extend([f"--encrypt={capture.encrypt_algorithm}", f"--encrypt-key-file={capture.encrypt_key_file}"])
        return self._engine(args, "backup")

    def decompress(self, target_dir: Path, *, compressed: bool, encrypted: bool) -> Command:
        capture = self._config.capture
        args = [f"--target-dir={target_dir}"]
        if encrypted:
            args.extend([f"--decrypt={capture.encrypt_algorithm}", f"--encrypt-key-file={capture.encrypt_key_file}"])
        if compressed:
            args.append("--decompress")
        return self._engine(args, "decompress")

    def prepare(
        self,
        target_dir: Path,
        *,
        incremental_dir: Optional[Path] = None,
        apply_log_only: bool = False,
        export: bool = False,
    ) -> Command:
        args = ["--prepare", f"--target-dir={target_dir}"]
        if incremental_dir is not None:
            args.append(f"--incremental-dir={incremental_dir}")
        if apply_log_only:
            args.append("--apply-log-only")
        if export:
            args.append("--export")
        return self._engine(args, "prepare")

    def copy_back(self, source_dir: Path, datadir: Path) -> Command:
        args = ["--copy-back", f"--target-dir={source_dir}", f"--datadir={datadir}"]
        return self._engine(args, "copy-back")

    def binlog_reader(self, segment: Path, stop_at: datetime) -> Command:
        return Command(
            self._config.tools.mysqlbinlog,
            (f"--stop-datetime={stop_at.strftime(PITR_TIME_FORMAT)}", str(segment)),
            label="binlog-reader",
        )

    def binlog_dump(self, segment: Path) -> Command:
        return Command(self._config.tools.mysqlbinlog, (str(segment),), label="binlog-reader")

    def sql_client(self) -> Command:
        return Command(self._config.tools.mysql, tuple(self._auth_args()), label="sql-client")

    def engine_version(self) -> Command:
        return Command(self._config.tools.mariabackup, ("--version",), label="version")

    def ping(self) -> Command:
        return Command(self._config.tools.mysql, (*self._auth_args(), "-e", "SELECT 1"), label="ping")


# ----------------------------------------------------------------------
def check_engine(runner: CommandRunner, config: BackupConfig) -> str:
    """Return the backup engine's version line; a missing engine is a configuration error."""

    result = runner.run(ToolCommands(config).engine_version())
    if not result.ok:
        raise ConfigInvalid(
            f"{config.tools.mariabackup} is not installed or not runnable: {result.stderr_tail() or result.returncode}"
        )
    # mariabackup prints its banner on stderr.
    lines = (result.stdout or result.stderr).strip().splitlines()
    return lines[0] if lines else config.tools.mariabackup


def check_server(runner: CommandRunner, config: BackupConfig) -> None:
    """Run ``SELECT 1`` through the SQL client; refuse to capture from a server that does not answer."""

    with credentials_file(config) as creds:
        result = runner.run(ToolCommands(config, creds).ping())
    if not result.ok:
        raise ConfigInvalid(f"MariaDB server is not running or connection failed: {result.stderr_tail()}")


__all__ = ["ToolCommands", "check_engine", "check_server", "credentials_file", "run_checked"]
