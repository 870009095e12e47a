"""Application entry point and CLI for report-fetch.

This module implements the main entry point: CLI argument parsing,
configuration loading, logging setup, and engine lifecycle management with
graceful shutdown handling.

Two modes are supported:
- Watch mode (default): monitor connectivity and fetch whenever the device
  comes online, until interrupted
- One-shot mode (``--once``): wait for the device, run one batch, exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import NoReturn

from report_fetch.core.config import (
    ConfigurationError,
    EnvironmentVariableError,
    MainConfig,
    load_main_config,
)
from report_fetch.core.errors import BridgeError
from report_fetch.core.orchestrator import ReportEngine
from report_fetch.utils.logging import configure_logging

__all__ = ["main"]

DEFAULT_CONFIG_PATH: Path = Path("config/report-fetch.yaml")
DEFAULT_WAIT_SECONDS: float = 30.0

# Exit codes
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 1
EXIT_DEVICE_OFFLINE = 2


class DeviceNeverOnline(Exception):
    """Raised in one-shot mode when no device came online in time."""


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments for report-fetch.

    CLI Arguments:
        --config, -c: Path to main configuration file
        --log-level: Override log level from config
        --syslog: Enable syslog integration
        --once: Fetch once and exit instead of watching
        --wait: Seconds to wait for the device in one-shot mode
    """
    parser = argparse.ArgumentParser(
        prog="report-fetch",
        description="Pull reports from a device over the adb bridge and archive them on the device",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  report-fetch
  report-fetch --config /path/to/config.yaml
  report-fetch --once --wait 60 --log-level DEBUG
        """,
    )

    _ = parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to main configuration file (default: {DEFAULT_CONFIG_PATH})",
        metavar="PATH",
    )

    _ = parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration",
        metavar="LEVEL",
    )

    _ = parser.add_argument(
        "--syslog",
        action="store_true",
        help="Enable syslog integration (overrides config)",
    )

    _ = parser.add_argument(
        "--once",
        action="store_true",
        help="Wait for the device, fetch one batch and exit",
    )

    _ = parser.add_argument(
        "--wait",
        type=float,
        default=DEFAULT_WAIT_SECONDS,
        help=f"Seconds to wait for the device with --once (default: {DEFAULT_WAIT_SECONDS:g})",
        metavar="SECONDS",
    )

    return parser.parse_args(argv)


def load_config(config_path: Path) -> MainConfig:
    """Load the configuration file, or defaults if the default path is absent."""
    if config_path == DEFAULT_CONFIG_PATH and not config_path.exists():
        return MainConfig()
    return load_main_config(config_path)


async def run_once(engine: ReportEngine, *, wait_seconds: float) -> None:
    """Wait for the device and run a single fetch batch.

    Raises:
        DeviceNeverOnline: If no device came online within ``wait_seconds``
    """
    logger = logging.getLogger(__name__)
    session = await engine.wait_for_device(wait_seconds)
    if session is None:
        msg = f"No device came online within {wait_seconds:g} seconds"
        raise DeviceNeverOnline(msg)

    result = await engine.fetch_reports()
    logger.info(
        "One-shot fetch finished",
        extra={
            "status": engine.download_status.value,
            "transferred": len(result.batch.transferred),
            "skipped": len(result.batch.skipped),
            "failed": len(result.batch.failed),
        },
    )


async def async_main(
    *,
    config_path: Path,
    log_level: str | None = None,
    enable_syslog: bool = False,
    once: bool = False,
    wait_seconds: float = DEFAULT_WAIT_SECONDS,
) -> None:
    """Async main function implementing application lifecycle.

    Raises:
        ConfigurationError: If configuration is invalid
        BridgeError: If the bridge server cannot be started or a one-shot
            fetch fails
        DeviceNeverOnline: If no device came online in one-shot mode
    """
    config = load_config(config_path)

    if log_level is not None:
        config.application.log_level = log_level
    if enable_syslog:
        config.application.syslog_enabled = True

    configure_logging(
        log_level=config.application.log_level,
        enable_syslog=config.application.syslog_enabled,
        enable_console=True,
    )

    logger = logging.getLogger(__name__)
    logger.info(
        "Report-fetch starting",
        extra={"config_path": str(config_path), "mode": "once" if once else "watch"},
    )

    engine = ReportEngine(config)
    _ = await engine.initialize()

    if once:
        await run_once(engine, wait_seconds=wait_seconds)
        return

    shutdown_requested = False

    def request_shutdown() -> None:
        """Request graceful shutdown of the engine."""
        nonlocal shutdown_requested
        if not shutdown_requested:
            shutdown_requested = True
            logger.info("Shutdown signal received, requesting graceful shutdown")
            engine.request_shutdown()

    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_shutdown)

    try:
        logger.info("Starting engine")
        await engine.start()

    except Exception as exc:
        logger.exception(
            "Engine failed during execution",
            extra={"error": str(exc)},
        )
        raise

    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            _ = loop.remove_signal_handler(sig)

        logger.info("Report-fetch shutdown complete")


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for report-fetch.

    Exit Codes:
        0: Clean shutdown or successful one-shot fetch
        1: Configuration error or runtime error
        2: Device never came online (one-shot mode)
    """
    args = parse_arguments(argv)

    try:
        # Extract args with type annotations to avoid reportAny at argparse boundary
        config_path_arg: Path = args.config  # pyright: ignore[reportAny]  # argparse boundary
        log_level_arg: str | None = args.log_level  # pyright: ignore[reportAny]  # argparse boundary
        syslog_arg: bool = args.syslog  # pyright: ignore[reportAny]  # argparse boundary
        once_arg: bool = args.once  # pyright: ignore[reportAny]  # argparse boundary
        wait_arg: float = args.wait  # pyright: ignore[reportAny]  # argparse boundary

        asyncio.run(
            async_main(
                config_path=config_path_arg,
                log_level=log_level_arg,
                enable_syslog=syslog_arg,
                once=once_arg,
                wait_seconds=wait_arg,
            )
        )

    except ConfigurationError as exc:
        print(f"Configuration error:\n{exc}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    except EnvironmentVariableError as exc:
        print(f"Environment variable error:\n{exc}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    except DeviceNeverOnline as exc:
        print(f"Device error: {exc}", file=sys.stderr)
        sys.exit(EXIT_DEVICE_OFFLINE)

    except BridgeError as exc:
        print(f"Bridge error: {exc}", file=sys.stderr)
        sys.exit(EXIT_RUNTIME_ERROR)

    except (RuntimeError, OSError) as exc:
        print(f"Runtime error: {exc}", file=sys.stderr)
        sys.exit(EXIT_RUNTIME_ERROR)

    except KeyboardInterrupt:
        print("\nShutdown complete", file=sys.stderr)
        sys.exit(EXIT_SUCCESS)

    sys.exit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
