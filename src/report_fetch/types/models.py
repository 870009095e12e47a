"""Data models for report-fetch.

This module defines the dataclasses and enums shared between the bridge
executor, the connectivity monitor, and the transfer/archive pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class ConnectivityState(Enum):
    """Observed connectivity of the bridge and its device.

    State transitions:
        INIT_PENDING → ADB_SERVER_READY: bridge server started or reused
        * → DISCONNECTED: enumeration empty, failed, or device not usable
        * → UNAUTHORIZED: first device awaits USB debugging authorization
        * → ONLINE: first device fully online
    """

    INIT_PENDING = "init_pending"
    DISCONNECTED = "disconnected"
    UNAUTHORIZED = "unauthorized"
    ADB_SERVER_READY = "adb_server_ready"
    ONLINE = "online"


class DownloadStatus(Enum):
    """Status of the current fetch batch as shown to the operator."""

    INIT = "init"
    NO_REPORTS = "no_reports"
    DOWNLOADING = "downloading"
    DOWNLOADING_COMPLETE = "downloading_complete"
    DOWNLOAD_FAILED = "download_failed"


class BridgeServerStartResult(Enum):
    """Outcome of starting the bridge server. All values mean ready."""

    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    RESTARTED_OUTDATED = "restarted_outdated"


@dataclass(slots=True, frozen=True)
class DeviceSession:
    """Immutable snapshot of the canonical (first enumerated) device.

    The connectivity monitor replaces the snapshot wholesale on every poll;
    readers never see a partially updated session.
    """

    serial: str | None
    state: ConnectivityState
    observed_at: datetime

    @property
    def is_online(self) -> bool:
        """Check if the device can accept shell commands."""
        return self.serial is not None and self.state is ConnectivityState.ONLINE


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Outcome of one bridge command execution.

    Attributes:
        args: Arguments passed to the bridge binary.
        stdout: Captured standard output.
        stderr: Captured standard error.
        returncode: Exit code of the bridge process.
    """

    args: tuple[str, ...]
    stdout: str
    stderr: str
    returncode: int

    @property
    def success(self) -> bool:
        """Check if the command exited cleanly."""
        return self.returncode == 0


@dataclass(slots=True, frozen=True)
class ArchivePolicy:
    """Retention settings for the remote archive directory."""

    reports_path: str
    archive_path: str
    max_archived_files: int = 100

    def __post_init__(self) -> None:
        if self.max_archived_files <= 0:
            msg = f"max_archived_files must be greater than zero, got {self.max_archived_files}"
            raise ValueError(msg)


@dataclass(slots=True)
class TransferBatch:
    """One invocation of the fetch operation.

    ``files`` and ``count`` are fixed once listing completes; ``current_file``
    only ever increases, from 0 up to ``count``.
    """

    source: str
    destination: Path
    date: str
    files: tuple[str, ...] = ()
    current_file: int = 0
    transferred: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        """Number of candidate reports in the batch."""
        return len(self.files)

    def advance(self) -> int:
        """Mark one more file as processed and return the new counter."""
        if self.current_file >= self.count:
            msg = f"Batch already complete ({self.current_file}/{self.count})"
            raise RuntimeError(msg)
        self.current_file += 1
        return self.current_file


@dataclass(slots=True)
class ArchiveReport:
    """Summary of one remote archive pass."""

    moved: list[str] = field(default_factory=list)
    deduplicated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    removed_by_cleanup: list[str] = field(default_factory=list)
