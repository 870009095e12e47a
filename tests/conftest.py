"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import pytest

from report_fetch.core.config import MainConfig, PathsConfig
from report_fetch.core.events import EngineEvents
from report_fetch.core.remote import RemoteShell
from tests.fixtures.bridge import ARCHIVE_PATH, FIXED_NOW, REPORTS_PATH, FakeBridge, FakeDevice
from tests.fixtures.events import EventRecorder


@pytest.fixture
def device() -> FakeDevice:
    """Device with empty reports and archive directories."""
    fake = FakeDevice()
    fake.add_directory(REPORTS_PATH)
    fake.add_directory(ARCHIVE_PATH)
    return fake


@pytest.fixture
def bridge(device: FakeDevice) -> FakeBridge:
    return FakeBridge(device)


@pytest.fixture
def events() -> EngineEvents:
    return EngineEvents()


@pytest.fixture
def recorder(events: EngineEvents) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def config(tmp_path: Path) -> MainConfig:
    """Default configuration writing into a temporary output root."""
    return MainConfig(
        paths=PathsConfig(
            reports_path=REPORTS_PATH,
            archive_path=ARCHIVE_PATH,
            output_root=tmp_path / "output",
        ),
    )


@pytest.fixture
def shell(bridge: FakeBridge, config: MainConfig) -> RemoteShell:
    return RemoteShell(bridge, config.timeouts)
