"""Test cases for logging setup and correlation ID tracking."""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
from collections.abc import Iterator
from unittest.mock import patch

import pytest

from report_fetch.utils.logging import (
    CorrelationIDFilter,
    configure_logging,
    correlation_scope,
    get_correlation_id,
)


@pytest.fixture
def restore_root_logger() -> Iterator[logging.Logger]:
    """Restore root logger handlers and level after configure_logging."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record() -> logging.LogRecord:
    return logging.LogRecord("report_fetch.test", logging.INFO, __file__, 1, "message", None, None)


@pytest.mark.unit
class TestCorrelationIDFilter:
    """Test CorrelationIDFilter record enrichment."""

    def test_adds_current_id(self) -> None:
        """Test the current correlation ID is attached to the record."""
        record = make_record()

        with correlation_scope("fetch") as correlation_id:
            assert CorrelationIDFilter().filter(record) is True

        assert getattr(record, "correlation_id") == correlation_id

    def test_placeholder_without_id(self) -> None:
        """Test records outside any scope get N/A."""
        record = make_record()

        _ = CorrelationIDFilter().filter(record)

        assert getattr(record, "correlation_id") == "N/A"


@pytest.mark.unit
class TestCorrelationScope:
    """Test correlation_scope context manager."""

    def test_generates_prefixed_id(self) -> None:
        """Test the scope yields a prefixed 8-hex-digit ID."""
        with correlation_scope("fetch") as correlation_id:
            assert correlation_id.startswith("fetch-")
            assert len(correlation_id) == len("fetch-") + 8
            assert get_correlation_id() == correlation_id

    def test_restores_previous_id(self) -> None:
        """Test the outer ID is restored after the scope exits."""
        with correlation_scope("fetch") as outer:
            with correlation_scope("archive") as inner:
                assert get_correlation_id() == inner

            assert get_correlation_id() == outer

        assert get_correlation_id() is None

    def test_restores_on_error(self) -> None:
        """Test the ID is restored when the block raises."""
        with pytest.raises(RuntimeError):
            with correlation_scope("fetch"):
                raise RuntimeError("boom")

        assert get_correlation_id() is None

    @pytest.mark.asyncio
    async def test_tasks_are_isolated(self) -> None:
        """Test concurrent tasks keep their own correlation IDs."""

        async def worker(prefix: str) -> tuple[str, str | None]:
            with correlation_scope(prefix) as correlation_id:
                await asyncio.sleep(0.01)
                return correlation_id, get_correlation_id()

        results = await asyncio.gather(worker("fetch"), worker("poll"))

        for expected, observed in results:
            assert expected == observed


@pytest.mark.unit
class TestConfigureLogging:
    """Test root handler configuration."""

    def test_console_handler_with_filter(self, restore_root_logger: logging.Logger) -> None:
        """Test a stdout handler carrying the correlation filter is installed."""
        configure_logging(log_level="DEBUG")

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        handler = restore_root_logger.handlers[0]
        assert isinstance(handler, logging.StreamHandler)
        assert any(isinstance(f, CorrelationIDFilter) for f in handler.filters)

    def test_repeated_calls_do_not_duplicate(self, restore_root_logger: logging.Logger) -> None:
        """Test calling twice replaces rather than adds handlers."""
        configure_logging()
        configure_logging()

        assert len(restore_root_logger.handlers) == 1

    def test_unknown_level_falls_back_to_info(self, restore_root_logger: logging.Logger) -> None:
        """Test an unknown level name yields INFO."""
        configure_logging(log_level="chatty")

        assert restore_root_logger.level == logging.INFO

    def test_syslog_handler_added(self, restore_root_logger: logging.Logger) -> None:
        """Test syslog integration adds a SysLogHandler."""
        with patch.object(logging.handlers.SysLogHandler, "_connect_unixsocket"):
            configure_logging(enable_syslog=True, enable_console=False)

        handlers = restore_root_logger.handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.handlers.SysLogHandler)

    def test_syslog_failure_keeps_console(
        self,
        restore_root_logger: logging.Logger,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test a syslog handler that cannot be created is reported and skipped."""
        with patch("logging.handlers.SysLogHandler", side_effect=OSError("Connection refused")):
            configure_logging(enable_syslog=True)

        assert len(restore_root_logger.handlers) == 1
        assert not isinstance(restore_root_logger.handlers[0], logging.handlers.SysLogHandler)
        assert "Could not connect to syslog" in capsys.readouterr().err
