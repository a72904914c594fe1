"""Error hierarchy for backup operations."""
from __future__ import annotations

from typing import Optional


class BackupError(RuntimeError):
    """Base exception for backup related failures."""

    # Set once an ERROR notification went out for this failure.
    notified = False


class ConfigInvalid(BackupError):
    """Raised during pre-flight validation, before any tool runs."""


class EntryNotFound(BackupError):
    """Raised when a catalog lookup does not match any entry."""


class ChainResolutionError(BackupError):
    """Raised when a restore chain cannot be computed."""


class ChainBroken(ChainResolutionError):
    """A predecessor is missing, corrupt, unverified or linked to the wrong base."""


class AmbiguousChain(ChainResolutionError):
    """Two chain candidates share a capture timestamp."""


class ToolInvocationFailed(BackupError):
    """Raised when an external program exits non-zero."""

    def __init__(self, message: str, *, command: str = "", returncode: Optional[int] = None, stderr: str = "") -> None:
        detail = message
        if returncode is not None:
            detail = f"{message} (exit {returncode})"
        if stderr:
            detail = f"{detail}: {stderr}"
        super().__init__(detail)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class CaptureFailed(BackupError):
    """Raised when a capture cannot be completed."""


class BackupVerificationError(BackupError):
    """Raised when verification of a captured entry fails."""


class InsufficientDiskSpace(CaptureFailed):
    """Raised when the backup volume is below the configured free-space floor."""


class LockAcquisitionFailed(BackupError):
    """Raised when the server-wide read lock cannot be confirmed."""


class PrepareFailed(BackupError):
    """Raised when a chain element cannot be prepared."""

    def __init__(self, entry_id: str, message: str) -> None:
        super().__init__(f"prepare failed at {entry_id}: {message}")
        self.entry_id = entry_id


class AlreadyPrepared(PrepareFailed):
    """The full backup directory has already been merged."""


class RestoreFailed(BackupError):
    """Raised when a restore step fails; no rollback is attempted."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"restore failed at step '{step}': {message}")
        self.step = step


class NoFullBackup(BackupError):
    """Raised when an operation needs a full backup and none is recorded."""


class NoBinlogSet(BackupError):
    """Raised when point-in-time recovery finds no binary log archive."""


class PartialCopyFailure(BackupError):
    """Raised when only some binary log segments could be archived."""

    def __init__(self, copied: int, found: int, message: str = "") -> None:
        text = message or f"copied {copied} of {found} binary log segments"
        super().__init__(text)
        self.copied = copied
        self.found = found


class PITRFailed(BackupError):
    """Raised when the binary log replay cannot be built or applied."""

    def __init__(self, message: str, *, segment: Optional[str] = None, line: Optional[int] = None) -> None:
        detail = message
        if segment:
            detail = f"{detail} [segment {segment}]"
        if line is not None:
            detail = f"{detail} [replay line {line}]"
        super().__init__(detail)
        self.segment = segment
        self.line = line


__all__ = [
    "AlreadyPrepared",
    "AmbiguousChain",
    "BackupError",
    "BackupVerificationError",
    "CaptureFailed",
    "ChainBroken",
    "ChainResolutionError",
    "ConfigInvalid",
    "EntryNotFound",
    "InsufficientDiskSpace",
    "LockAcquisitionFailed",
    "NoBinlogSet",
    "NoFullBackup",
    "PITRFailed",
    "PartialCopyFailure",
    "PrepareFailed",
    "RestoreFailed",
    "ToolInvocationFailed",
]
