"""Transfer pipeline pulling reports from the device to the host.

One call to :meth:`TransferPipeline.fetch` is one batch:

1. List the remote reports directory (oldest first, directories dropped)
2. Log the remote folder size
3. Create the dated host folder under the output root
4. Per file, in listing order: type check, archival rename, skip if the
   host copy exists, exclusive pull, then a progress event

Listing failure is fatal to the batch. A failure on one file is logged and
the loop moves on to the next file.
"""

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Final

from report_fetch.core.config import PathsConfig, TransferConfig
from report_fetch.core.errors import BridgeError, DeviceUnavailable, IOConflict, ListingFailed
from report_fetch.core.events import EngineEvents
from report_fetch.core.remote import RemoteShell, join_remote
from report_fetch.types import DeviceSession, DownloadStatus, TransferBatch

logger = logging.getLogger(__name__)

ARCHIVED_MARKER: Final[str] = "_Archived_"
DATE_FORMAT: Final[str] = "%Y-%m-%d"
REPORTS_FOLDER_PREFIX: Final[str] = "Reports-"


class FileOutcome(Enum):
    """Result of processing one listed remote file."""

    TRANSFERRED = "transferred"
    SKIPPED = "skipped"
    FAILED = "failed"


def archived_name(name: str, date: str, extensions: Sequence[str]) -> str:
    """Splice the archival date stamp before a matching extension.

    Matching is case-insensitive; the original casing of the name and
    extension is kept.

    Examples:
        >>> archived_name("report.csv", "2024-01-01", (".pdf", ".csv"))
        'report_Archived_2024-01-01.csv'
        >>> archived_name("notes.txt", "2024-01-01", (".pdf", ".csv"))
        'notes.txt'
    """
    lowered = name.lower()
    for extension in extensions:
        if lowered.endswith(extension.lower()) and len(name) > len(extension):
            stem = name[: -len(extension)]
            suffix = name[-len(extension) :]
            return f"{stem}{ARCHIVED_MARKER}{date}{suffix}"
    return name


class DownloadStatusTracker:
    """Publish download status changes, suppressing repeats within a batch."""

    def __init__(self, events: EngineEvents) -> None:
        self._events: EngineEvents = events
        self._status: DownloadStatus = DownloadStatus.INIT

    @property
    def status(self) -> DownloadStatus:
        return self._status

    def reset(self) -> None:
        """Forget the last status so the next batch publishes afresh."""
        self._status = DownloadStatus.INIT

    def set(self, status: DownloadStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.debug("Download status changed", extra={"status": status.value})
        self._events.download_changed(status)


class TransferPipeline:
    """Pull every report in the remote reports directory into a dated folder."""

    def __init__(
        self,
        shell: RemoteShell,
        *,
        paths: PathsConfig,
        transfer: TransferConfig,
        events: EngineEvents,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._shell: RemoteShell = shell
        self._paths: PathsConfig = paths
        self._transfer: TransferConfig = transfer
        self._events: EngineEvents = events
        self._clock: Callable[[], datetime] = clock
        self._status: DownloadStatusTracker = DownloadStatusTracker(events)

    @property
    def status(self) -> DownloadStatus:
        """Status of the current or most recent batch."""
        return self._status.status

    def update_paths(self, paths: PathsConfig) -> None:
        """Use ``paths`` for every batch started from now on."""
        self._paths = paths

    def _fail(self, error: BridgeError | OSError) -> None:
        self._status.set(DownloadStatus.DOWNLOAD_FAILED)
        self._events.error(error)

    async def fetch(self, session: DeviceSession) -> TransferBatch:
        """Run one transfer batch against the device in ``session``.

        Args:
            session: Latest device snapshot; must be online

        Returns:
            The completed batch with per-file outcome lists

        Raises:
            DeviceUnavailable: If the session has no online device
            ListingFailed: If the reports directory could not be listed
            OSError: If the host destination folder could not be created
        """
        self._status.reset()
        paths = self._paths
        date = self._clock().strftime(DATE_FORMAT)
        batch = TransferBatch(
            source=paths.reports_path,
            destination=paths.output_root / f"{REPORTS_FOLDER_PREFIX}{date}",
            date=date,
        )

        if not session.is_online or session.serial is None:
            error = DeviceUnavailable(f"No online device (state: {session.state.value})")
            logger.error("Fetch requested without an online device", extra={"state": session.state.value})
            self._fail(error)
            raise error
        serial = session.serial

        logger.info("Fetching reports", extra={"serial": serial, "source": batch.source})
        try:
            names = await self._shell.list_files(serial, batch.source)
        except (BridgeError, OSError) as exc:
            error = ListingFailed(batch.source, cause=exc)
            logger.error("Listing reports failed", extra={"source": batch.source, "error": str(exc)})
            self._fail(error)
            raise error from exc

        batch.files = tuple(names)
        if not batch.files:
            logger.info("No reports on device", extra={"source": batch.source})
            self._status.set(DownloadStatus.NO_REPORTS)
            self._events.transfer_progress(0, 0)
            return batch

        await self._log_folder_size(serial, batch)
        self._status.set(DownloadStatus.DOWNLOADING)

        try:
            paths.output_root.mkdir(parents=True, exist_ok=True)
            batch.destination.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(
                "Could not create destination folder",
                extra={"destination": str(batch.destination), "error": str(exc)},
            )
            self._fail(exc)
            raise

        for name in batch.files:
            outcome = await self._process_file(serial, batch, name)
            match outcome:
                case FileOutcome.TRANSFERRED:
                    batch.transferred.append(name)
                case FileOutcome.SKIPPED:
                    batch.skipped.append(name)
                case FileOutcome.FAILED:
                    batch.failed.append(name)
            done = batch.advance()
            self._events.transfer_progress(done, batch.count)

        logger.info(
            "Reports fetched",
            extra={
                "destination": str(batch.destination),
                "transferred": len(batch.transferred),
                "skipped": len(batch.skipped),
                "failed": len(batch.failed),
            },
        )
        self._status.set(DownloadStatus.DOWNLOADING_COMPLETE)
        return batch

    async def _log_folder_size(self, serial: str, batch: TransferBatch) -> None:
        try:
            size = await self._shell.disk_usage(serial, batch.source)
        except (BridgeError, OSError) as exc:
            logger.warning("Could not determine reports folder size", extra={"error": str(exc)})
            return
        logger.info(
            "Reports folder size",
            extra={"source": batch.source, "file_count": batch.count, "size": f"{size}B"},
        )

    async def _process_file(self, serial: str, batch: TransferBatch, name: str) -> FileOutcome:
        remote_path = join_remote(batch.source, name)
        try:
            if await self._shell.is_directory(serial, remote_path):
                logger.debug("Skipping remote directory", extra={"remote_path": remote_path})
                return FileOutcome.SKIPPED

            saved_name = archived_name(name, batch.date, self._transfer.rename_extensions)
            destination: Path = batch.destination / saved_name
            if destination.exists():
                logger.debug("Report already on host, skipping", extra={"destination": str(destination)})
                return FileOutcome.SKIPPED

            await self._shell.pull(serial, remote_path, destination)
        except IOConflict as exc:
            logger.debug("Report appeared on host during transfer", extra={"destination": str(exc.path)})
            return FileOutcome.SKIPPED
        except (BridgeError, OSError) as exc:
            logger.error(
                "Failed to transfer report",
                extra={"remote_path": remote_path, "error": str(exc)},
            )
            return FileOutcome.FAILED

        logger.debug("Transferred report", extra={"remote_path": remote_path, "destination": str(destination)})
        return FileOutcome.TRANSFERRED
