"""Engine wiring the connectivity monitor, transfer pipeline and archive engine.

The engine is responsible for:

- Building the bridge executor and components from configuration
- Starting the bridge server
- Running the connectivity monitor until shutdown is requested
- Running fetch batches (list, transfer, archive) strictly in sequence
- Optionally fetching automatically whenever the device comes online
- Replacing path settings between batches

All bridge access is serialized through one operation gate shared with the
monitor, so a fetch and a poll never issue commands at the same time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from report_fetch.core.archive import ArchiveEngine
from report_fetch.core.config import MainConfig, PathsConfig
from report_fetch.core.errors import BridgeError
from report_fetch.core.events import CONNECTIVITY_CHANGED, ConnectivityChanged, EngineEvents, Event
from report_fetch.core.executor import CommandExecutor
from report_fetch.core.monitoring import ConnectivityMonitor, is_bridge_server_running
from report_fetch.core.remote import RemoteShell
from report_fetch.core.transfer import TransferPipeline
from report_fetch.types import (
    ArchivePolicy,
    ArchiveReport,
    BridgeExecutor,
    BridgeServerStartResult,
    ConnectivityState,
    DeviceSession,
    DownloadStatus,
    TransferBatch,
)
from report_fetch.utils.logging import correlation_scope

__all__ = ["FetchResult", "ReportEngine"]


@dataclass(slots=True, frozen=True)
class FetchResult:
    """Outcome of one fetch: the transfer batch and, if it ran, the archive pass."""

    batch: TransferBatch
    archive: ArchiveReport | None = None


def _archive_policy(config: MainConfig) -> ArchivePolicy:
    return ArchivePolicy(
        reports_path=config.paths.reports_path,
        archive_path=config.paths.archive_path,
        max_archived_files=config.archive.max_archived_files,
    )


class ReportEngine:
    """Coordinate connectivity polling with fetch-and-archive batches."""

    def __init__(
        self,
        config: MainConfig,
        *,
        executor: BridgeExecutor | None = None,
        events: EngineEvents | None = None,
        clock: Callable[[], datetime] = datetime.now,
        server_check: Callable[[], bool] = is_bridge_server_running,
    ) -> None:
        self._config: MainConfig = config
        self._events: EngineEvents = events or EngineEvents()
        self._executor: BridgeExecutor = executor or CommandExecutor(
            config.bridge.adb_path,
            flush_grace=config.timeouts.seconds("output_flush"),
        )
        self._gate: asyncio.Lock = asyncio.Lock()
        self._logger: logging.Logger = logging.getLogger(__name__)

        shell = RemoteShell(self._executor, config.timeouts)
        self._monitor: ConnectivityMonitor = ConnectivityMonitor(
            self._executor,
            bridge=config.bridge,
            timeouts=config.timeouts,
            events=self._events,
            gate=self._gate,
            server_check=server_check,
            clock=clock,
        )
        self._pipeline: TransferPipeline = TransferPipeline(
            shell,
            paths=config.paths,
            transfer=config.transfer,
            events=self._events,
            clock=clock,
        )
        self._archive: ArchiveEngine = ArchiveEngine(
            shell,
            policy=_archive_policy(config),
            events=self._events,
        )

        self._shutdown_event: asyncio.Event = asyncio.Event()
        self._task_group: asyncio.TaskGroup | None = None
        self._fetch_tasks: set[asyncio.Task[None]] = set()
        self._is_running: bool = False
        self._auto_fetch_subscription: str | None = None

    @property
    def config(self) -> MainConfig:
        return self._config

    @property
    def events(self) -> EngineEvents:
        """Event channel for connectivity, download, progress and errors."""
        return self._events

    @property
    def session(self) -> DeviceSession:
        """Latest device session snapshot."""
        return self._monitor.session

    @property
    def connectivity_state(self) -> ConnectivityState:
        return self._monitor.state

    @property
    def download_status(self) -> DownloadStatus:
        return self._pipeline.status

    @property
    def is_running(self) -> bool:
        """Return True if the engine is actively monitoring."""
        return self._is_running

    async def initialize(self) -> BridgeServerStartResult:
        """Start or reuse the bridge server.

        Raises:
            BridgeServerStartFailed: If the server could not be started
        """
        result = await self._monitor.start_bridge_server()
        self._logger.info("Bridge server ready", extra={"outcome": result.value})
        return result

    def request_shutdown(self) -> None:
        """Signal the engine to stop monitoring."""
        if self._shutdown_event.is_set():
            return
        self._logger.info("Shutdown requested")
        _ = self._shutdown_event.set()

    async def start(self) -> None:
        """Run the connectivity monitor until shutdown is requested."""
        if self._is_running:
            msg = "Engine is already running"
            raise RuntimeError(msg)

        self._is_running = True
        self._shutdown_event.clear()
        if self._config.transfer.auto_fetch:
            self._auto_fetch_subscription = self._events.subscribe(
                CONNECTIVITY_CHANGED,
                self._on_connectivity_changed,
            )
        try:
            async with asyncio.TaskGroup() as task_group:
                self._task_group = task_group
                _ = task_group.create_task(self._monitor.run(self._shutdown_event), name="connectivity-monitor")
                _ = task_group.create_task(self._shutdown_watcher(), name="shutdown-watcher")
        finally:
            if self._auto_fetch_subscription is not None:
                _ = self._events.unsubscribe(self._auto_fetch_subscription)
                self._auto_fetch_subscription = None
            self._task_group = None
            self._is_running = False

    async def _shutdown_watcher(self) -> None:
        _ = await self._shutdown_event.wait()
        for task in list(self._fetch_tasks):
            _ = task.cancel()

    def _on_connectivity_changed(self, event: Event) -> None:
        if not isinstance(event, ConnectivityChanged) or event.state is not ConnectivityState.ONLINE:
            return
        if self._task_group is None or self._shutdown_event.is_set():
            return
        task = self._task_group.create_task(self._auto_fetch(), name="auto-fetch")
        self._fetch_tasks.add(task)
        task.add_done_callback(self._fetch_tasks.discard)

    async def _auto_fetch(self) -> None:
        try:
            _ = await self.fetch_reports()
        except (BridgeError, OSError) as exc:
            # Already published on the error channel by the pipeline
            self._logger.warning("Automatic fetch failed", extra={"error": str(exc)})
        except asyncio.CancelledError:
            self._logger.info("Automatic fetch cancelled")
            raise

    async def fetch_reports(self) -> FetchResult:
        """Run one fetch batch, then the archive pass, under the operation gate.

        Returns:
            The transfer batch and the archive report (None when nothing
            was listed)

        Raises:
            DeviceUnavailable: If no device is online
            ListingFailed: If the reports directory could not be listed
            OSError: If the host destination folder could not be created
        """
        async with self._gate:
            with correlation_scope("fetch") as batch_id:
                self._logger.info("Fetch batch starting", extra={"batch_id": batch_id})
                session = self._monitor.session
                batch = await self._pipeline.fetch(session)
                if batch.count == 0 or session.serial is None:
                    return FetchResult(batch=batch)

                report = await self._archive.archive(session.serial, retain=batch.failed)
                return FetchResult(batch=batch, archive=report)

    async def wait_for_device(self, timeout: float) -> DeviceSession | None:
        """Poll until a device is online or ``timeout`` seconds elapse.

        Returns:
            The online session, or None if the device never came online
        """
        interval = self._config.bridge.poll_interval_ms / 1000.0
        with contextlib.suppress(TimeoutError):
            async with asyncio.timeout(timeout):
                while True:
                    async with self._gate:
                        session = await self._monitor.poll_once()
                    if session.is_online:
                        return session
                    await asyncio.sleep(interval)
        return None

    def update_paths(self, paths: PathsConfig, *, max_archived_files: int | None = None) -> None:
        """Replace path settings for every batch started from now on.

        A batch already in progress keeps the paths it started with.
        """
        archive = self._config.archive
        if max_archived_files is not None:
            archive = archive.model_copy(update={"max_archived_files": max_archived_files})
        config = self._config.model_copy(update={"paths": paths, "archive": archive})
        # Raises ValueError before anything is replaced
        policy = _archive_policy(config)

        self._config = config
        self._pipeline.update_paths(paths)
        self._archive.update_policy(policy)
        self._logger.info(
            "Paths updated",
            extra={
                "reports_path": paths.reports_path,
                "archive_path": paths.archive_path,
                "output_root": str(paths.output_root),
                "max_archived_files": archive.max_archived_files,
            },
        )
