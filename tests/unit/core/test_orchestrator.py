"""Unit tests for the report engine.

Tests cover:
- Bridge server initialization
- Fetch batches followed by the archive pass
- Waiting for a device with a deadline
- Path updates between batches
- Watch mode with automatic fetches and graceful shutdown
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime

import pytest

from report_fetch.core.config import BridgeConfig, MainConfig, PathsConfig, TransferConfig
from report_fetch.core.errors import DeviceUnavailable
from report_fetch.core.events import DOWNLOAD_CHANGED, EngineEvents, Event
from report_fetch.core.orchestrator import ReportEngine
from report_fetch.types import BridgeServerStartResult, ConnectivityState, DownloadStatus
from report_fetch.utils.logging import get_correlation_id
from tests.fixtures.bridge import ARCHIVE_PATH, REPORTS_PATH, SERIAL, FakeBridge, FakeDevice
from tests.fixtures.events import EventRecorder

pytestmark = pytest.mark.unit


@pytest.fixture
def fast_config(config: MainConfig) -> MainConfig:
    return config.model_copy(update={"bridge": BridgeConfig(poll_interval_ms=10)})


@pytest.fixture
def engine(
    fast_config: MainConfig,
    bridge: FakeBridge,
    events: EngineEvents,
    clock: Callable[[], datetime],
) -> ReportEngine:
    return ReportEngine(
        fast_config,
        executor=bridge,
        events=events,
        clock=clock,
        server_check=lambda: False,
    )


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_initialize_starts_server(self, engine: ReportEngine, recorder: EventRecorder) -> None:
        result = await engine.initialize()

        assert result is BridgeServerStartResult.STARTED
        assert engine.connectivity_state is ConnectivityState.ADB_SERVER_READY
        assert recorder.states == [ConnectivityState.ADB_SERVER_READY]

    def test_initial_state(self, engine: ReportEngine) -> None:
        assert engine.connectivity_state is ConnectivityState.INIT_PENDING
        assert engine.download_status is DownloadStatus.INIT
        assert engine.is_running is False


class TestFetchReports:
    """One batch: transfer, then archive."""

    @pytest.mark.asyncio
    async def test_fetch_transfers_then_archives(
        self,
        engine: ReportEngine,
        device: FakeDevice,
        fast_config: MainConfig,
        recorder: EventRecorder,
    ) -> None:
        device.add_file(f"{REPORTS_PATH}/a.pdf", b"a")
        device.add_file(f"{REPORTS_PATH}/b.csv", b"b")
        session = await engine.wait_for_device(1.0)
        assert session is not None

        result = await engine.fetch_reports()

        assert result.batch.transferred == ["a.pdf", "b.csv"]
        assert result.archive is not None
        assert result.archive.moved == ["a.pdf", "b.csv"]
        assert device.names_in(REPORTS_PATH) == []
        assert sorted(device.names_in(ARCHIVE_PATH)) == ["a.pdf", "b.csv"]
        dated = fast_config.paths.output_root / "Reports-2024-01-01"
        assert (dated / "a_Archived_2024-01-01.pdf").read_bytes() == b"a"
        assert recorder.statuses == [DownloadStatus.DOWNLOADING, DownloadStatus.DOWNLOADING_COMPLETE]
        assert engine.download_status is DownloadStatus.DOWNLOADING_COMPLETE

    @pytest.mark.asyncio
    async def test_failed_pull_stays_in_reports_for_next_batch(
        self,
        engine: ReportEngine,
        device: FakeDevice,
        bridge: FakeBridge,
        fast_config: MainConfig,
    ) -> None:
        """A report that never reached the host is not archived, so cleanup can never delete it."""
        device.add_file(f"{REPORTS_PATH}/a.pdf", b"a")
        device.add_file(f"{REPORTS_PATH}/b.csv", b"b")
        bridge.fail("pull", f"{REPORTS_PATH}/b.csv", times=1)
        _ = await engine.wait_for_device(1.0)

        first = await engine.fetch_reports()

        assert first.batch.failed == ["b.csv"]
        assert first.archive is not None
        assert first.archive.moved == ["a.pdf"]
        assert first.archive.skipped == ["b.csv"]
        assert device.names_in(REPORTS_PATH) == ["b.csv"]
        assert device.names_in(ARCHIVE_PATH) == ["a.pdf"]

        second = await engine.fetch_reports()

        assert second.batch.transferred == ["b.csv"]
        assert second.archive is not None
        assert second.archive.moved == ["b.csv"]
        assert device.names_in(REPORTS_PATH) == []
        dated = fast_config.paths.output_root / "Reports-2024-01-01"
        assert (dated / "b_Archived_2024-01-01.csv").read_bytes() == b"b"

    @pytest.mark.asyncio
    async def test_empty_batch_skips_archive(self, engine: ReportEngine, bridge: FakeBridge) -> None:
        _ = await engine.wait_for_device(1.0)

        result = await engine.fetch_reports()

        assert result.archive is None
        assert bridge.shell_calls("mkdir") == []

    @pytest.mark.asyncio
    async def test_fetch_without_device_raises(self, engine: ReportEngine, recorder: EventRecorder) -> None:
        with pytest.raises(DeviceUnavailable):
            _ = await engine.fetch_reports()

        assert recorder.statuses == [DownloadStatus.DOWNLOAD_FAILED]

    @pytest.mark.asyncio
    async def test_batch_runs_under_correlation_id(
        self,
        engine: ReportEngine,
        events: EngineEvents,
        device: FakeDevice,
    ) -> None:
        device.add_file(f"{REPORTS_PATH}/a.pdf")
        seen: list[str | None] = []

        def capture(_event: Event) -> None:
            seen.append(get_correlation_id())

        _ = events.subscribe(DOWNLOAD_CHANGED, capture)
        _ = await engine.wait_for_device(1.0)

        _ = await engine.fetch_reports()

        assert len(seen) == 2
        assert seen[0] is not None
        assert seen[0].startswith("fetch-")
        assert seen[0] == seen[1]
        assert get_correlation_id() is None


class TestWaitForDevice:
    @pytest.mark.asyncio
    async def test_returns_online_session(self, engine: ReportEngine) -> None:
        session = await engine.wait_for_device(1.0)

        assert session is not None
        assert session.serial == SERIAL
        assert engine.session is session

    @pytest.mark.asyncio
    async def test_returns_none_after_deadline(self, engine: ReportEngine, bridge: FakeBridge) -> None:
        bridge.set_device_state("unauthorized")

        session = await engine.wait_for_device(0.1)

        assert session is None
        assert engine.connectivity_state is ConnectivityState.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_device_appearing_later(self, engine: ReportEngine, bridge: FakeBridge) -> None:
        bridge.set_device_state(None)

        async def plug_in() -> None:
            await asyncio.sleep(0.05)
            bridge.set_device_state("device")

        plug_task = asyncio.create_task(plug_in())
        session = await engine.wait_for_device(2.0)
        await plug_task

        assert session is not None
        assert session.is_online


class TestUpdatePaths:
    @pytest.mark.asyncio
    async def test_new_paths_used_by_next_batch(
        self,
        engine: ReportEngine,
        device: FakeDevice,
        tmp_path_factory: pytest.TempPathFactory,
    ) -> None:
        output_root = tmp_path_factory.mktemp("new-root")
        device.add_file("/sdcard/Download/r.pdf")
        paths = PathsConfig(
            reports_path="/sdcard/Download",
            archive_path="/sdcard/Download/Archive",
            output_root=output_root,
        )

        engine.update_paths(paths, max_archived_files=5)
        _ = await engine.wait_for_device(1.0)
        result = await engine.fetch_reports()

        assert engine.config.paths == paths
        assert engine.config.archive.max_archived_files == 5
        assert result.batch.transferred == ["r.pdf"]
        assert (output_root / "Reports-2024-01-01" / "r_Archived_2024-01-01.pdf").exists()
        assert device.names_in("/sdcard/Download/Archive") == ["r.pdf"]

    def test_invalid_bound_leaves_config_untouched(self, engine: ReportEngine) -> None:
        before = engine.config

        with pytest.raises(ValueError, match="max_archived_files"):
            engine.update_paths(PathsConfig(reports_path="/sdcard/Other"), max_archived_files=0)

        assert engine.config is before


class TestWatchMode:
    """start() with automatic fetches on connect."""

    @pytest.mark.asyncio
    async def test_auto_fetch_on_connect(
        self,
        engine: ReportEngine,
        device: FakeDevice,
        events: EngineEvents,
        recorder: EventRecorder,
    ) -> None:
        device.add_file(f"{REPORTS_PATH}/a.pdf")
        _ = await engine.initialize()

        task = asyncio.create_task(engine.start())
        await eventually(lambda: DownloadStatus.DOWNLOADING_COMPLETE in recorder.statuses)
        assert engine.is_running

        engine.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

        assert engine.is_running is False
        assert device.names_in(ARCHIVE_PATH) == ["a.pdf"]
        assert recorder.states == [ConnectivityState.ADB_SERVER_READY, ConnectivityState.ONLINE]
        # The auto-fetch subscription is removed on shutdown
        assert events.subscriber_count("connectivity.changed") == 1

    @pytest.mark.asyncio
    async def test_single_fetch_per_connection(
        self,
        engine: ReportEngine,
        recorder: EventRecorder,
    ) -> None:
        task = asyncio.create_task(engine.start())
        await eventually(lambda: DownloadStatus.NO_REPORTS in recorder.statuses)
        await asyncio.sleep(0.1)

        engine.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

        assert recorder.statuses == [DownloadStatus.NO_REPORTS]

    @pytest.mark.asyncio
    async def test_auto_fetch_disabled(
        self,
        fast_config: MainConfig,
        bridge: FakeBridge,
        events: EngineEvents,
        recorder: EventRecorder,
        clock: Callable[[], datetime],
    ) -> None:
        config = fast_config.model_copy(update={"transfer": TransferConfig(auto_fetch=False)})
        engine = ReportEngine(config, executor=bridge, events=events, clock=clock, server_check=lambda: False)

        task = asyncio.create_task(engine.start())
        await eventually(lambda: ConnectivityState.ONLINE in recorder.states)
        await asyncio.sleep(0.05)
        engine.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

        assert recorder.statuses == []
        assert bridge.shell_calls("ls") == []

    @pytest.mark.asyncio
    async def test_failed_auto_fetch_keeps_monitoring(
        self,
        engine: ReportEngine,
        bridge: FakeBridge,
        recorder: EventRecorder,
    ) -> None:
        bridge.fail("ls", times=1)

        task = asyncio.create_task(engine.start())
        await eventually(lambda: DownloadStatus.DOWNLOAD_FAILED in recorder.statuses)
        polls_before = bridge.calls.count(("devices",))
        await eventually(lambda: bridge.calls.count(("devices",)) > polls_before)

        engine.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

        assert len(recorder.errors) == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_fetch(
        self,
        engine: ReportEngine,
        bridge: FakeBridge,
        device: FakeDevice,
        recorder: EventRecorder,
    ) -> None:
        for index in range(50):
            device.add_file(f"{REPORTS_PATH}/r-{index}.pdf")
        bridge.delay = 0.01

        task = asyncio.create_task(engine.start())
        await eventually(lambda: DownloadStatus.DOWNLOADING in recorder.statuses)

        engine.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

        assert DownloadStatus.DOWNLOADING_COMPLETE not in recorder.statuses
        assert engine.is_running is False

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, engine: ReportEngine, recorder: EventRecorder) -> None:
        task = asyncio.create_task(engine.start())
        await eventually(lambda: engine.is_running)

        with pytest.raises(RuntimeError, match="already running"):
            await engine.start()

        engine.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)
