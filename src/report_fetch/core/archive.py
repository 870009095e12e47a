"""Remote archive and cleanup engine.

Runs on the device filesystem after a transfer batch. Every report left in
the reports directory, except those the batch failed to pull, is moved into the archive directory with a two-phase
move: copy, verify the copy exists, and only then remove the source. A
report already present in the archive has its source removed directly.

Afterwards the archive is trimmed to ``max_archived_files`` by deleting the
oldest entries. "Oldest" is whatever ``ls -tr`` lists first; no timestamps
are compared here.
"""

import logging
from collections.abc import Collection

from report_fetch.core.errors import BridgeError
from report_fetch.core.events import EngineEvents
from report_fetch.core.remote import RemoteShell, join_remote
from report_fetch.types import ArchivePolicy, ArchiveReport

logger = logging.getLogger(__name__)


class ArchiveEngine:
    """Move processed reports into the remote archive and bound its size."""

    def __init__(
        self,
        shell: RemoteShell,
        *,
        policy: ArchivePolicy,
        events: EngineEvents,
    ) -> None:
        self._shell: RemoteShell = shell
        self._policy: ArchivePolicy = policy
        self._events: EngineEvents = events

    @property
    def policy(self) -> ArchivePolicy:
        return self._policy

    def update_policy(self, policy: ArchivePolicy) -> None:
        """Use ``policy`` for every pass started from now on."""
        self._policy = policy

    async def archive(self, serial: str, *, retain: Collection[str] = ()) -> ArchiveReport:
        """Archive every report in the reports directory, then trim the archive.

        Per-file errors are logged and recorded in the report. A failure of
        the pass itself (listing the reports directory, creating the archive
        directory, or listing the archive for cleanup) is logged and
        published on the error channel; the partial report is returned.

        Args:
            serial: Serial of the online device
            retain: Report names that never reached the host; they stay in
                the reports directory so the next batch pulls them again

        Returns:
            Outcome lists for this pass
        """
        policy = self._policy
        kept = frozenset(retain)
        report = ArchiveReport()
        logger.debug("Archiving reports on device", extra={"archive_path": policy.archive_path})

        try:
            entries = await self._shell.list_files(serial, policy.reports_path, oldest_first=False)
            if not entries:
                logger.debug("No reports to archive")
                return report

            await self._shell.make_directory(serial, policy.archive_path)

            for name in entries:
                if name in kept:
                    logger.warning(
                        "Leaving report that was not transferred",
                        extra={"remote_path": join_remote(policy.reports_path, name)},
                    )
                    report.skipped.append(name)
                    continue
                await self._archive_one(serial, policy, name, report)

            report.removed_by_cleanup.extend(await self.cleanup(serial))
        except (BridgeError, OSError) as exc:
            logger.error("Archive pass failed", extra={"error": str(exc)})
            self._events.error(exc)
            return report

        logger.info(
            "Archive pass completed",
            extra={
                "moved": len(report.moved),
                "deduplicated": len(report.deduplicated),
                "skipped": len(report.skipped),
                "failed": len(report.failed),
                "removed_by_cleanup": len(report.removed_by_cleanup),
            },
        )
        return report

    async def _archive_one(
        self,
        serial: str,
        policy: ArchivePolicy,
        name: str,
        report: ArchiveReport,
    ) -> None:
        source = join_remote(policy.reports_path, name)
        target = join_remote(policy.archive_path, name)

        try:
            if not await self._shell.is_file(serial, source):
                logger.debug("Skipping non-file", extra={"remote_path": source})
                report.skipped.append(name)
                return

            if await self._shell.is_file(serial, target):
                await self._shell.remove(serial, source)
                logger.debug("Removed already archived report", extra={"remote_path": source})
                report.deduplicated.append(name)
                return

            await self._shell.copy(serial, source, target)

            # The source stays until the archived copy is confirmed
            if not await self._shell.is_file(serial, target):
                logger.error("Failed to verify archived copy", extra={"remote_path": source, "target": target})
                report.failed.append(name)
                return

            await self._shell.remove(serial, source)
        except (BridgeError, OSError) as exc:
            logger.error("Error archiving report", extra={"remote_path": source, "error": str(exc)})
            report.failed.append(name)
            return

        logger.debug("Archived report", extra={"remote_path": source, "target": target})
        report.moved.append(name)

    async def cleanup(self, serial: str) -> list[str]:
        """Delete the oldest archive entries beyond ``max_archived_files``.

        Exactly ``count - max`` leading entries of the oldest-first listing
        are considered; entries that are not regular files are left alone.

        Returns:
            Names removed from the archive

        Raises:
            BridgeError: If the archive directory could not be listed
        """
        policy = self._policy
        entries = await self._shell.list_files(serial, policy.archive_path)
        surplus = len(entries) - policy.max_archived_files
        if surplus <= 0:
            return []

        logger.debug(
            "Archive over capacity",
            extra={"count": len(entries), "max_archived_files": policy.max_archived_files, "surplus": surplus},
        )
        removed: list[str] = []
        for name in entries[:surplus]:
            path = join_remote(policy.archive_path, name)
            try:
                if not await self._shell.is_file(serial, path):
                    logger.debug("Skipping non-file during cleanup", extra={"remote_path": path})
                    continue
                await self._shell.remove(serial, path, timeout_key="cleanup")
            except (BridgeError, OSError) as exc:
                logger.error("Failed to remove old archive file", extra={"remote_path": path, "error": str(exc)})
                continue
            logger.debug("Removed old archive file", extra={"remote_path": path})
            removed.append(name)
        return removed
