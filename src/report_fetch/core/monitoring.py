"""Device connectivity monitoring over the bridge.

This module provides the connectivity state monitor:
- Bridge server start-up (started, reused, or restarted when outdated)
- Device enumeration parsing and classification
- Polling loop that publishes state changes only, never every tick
- Immutable device session snapshots replaced wholesale on every poll

Polling and fetch operations share a single-slot gate (an ``asyncio.Lock``).
A tick that finds the gate held by a fetch is skipped, so at most one bridge
command is ever in flight and polling pauses for the duration of a batch.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Final

import psutil

from report_fetch.core.config import BridgeConfig, TimeoutsConfig
from report_fetch.core.errors import BridgeError, BridgeServerStartFailed
from report_fetch.core.events import EngineEvents
from report_fetch.types import (
    BridgeExecutor,
    BridgeServerStartResult,
    ConnectivityState,
    DeviceSession,
)

logger = logging.getLogger(__name__)

ONLINE_DEVICE_STATE: Final[str] = "device"
UNAUTHORIZED_DEVICE_STATE: Final[str] = "unauthorized"
_DEVICE_LIST_HEADER: Final[str] = "list of devices"
_OUTDATED_MARKERS: Final[tuple[str, ...]] = ("doesn't match", "out of date", "killing")
_SERVER_START_TIMEOUT_SECONDS: Final[float] = 30.0


def parse_device_list(output: str) -> list[tuple[str, str]]:
    """Parse ``adb devices`` output into ordered ``(serial, state)`` pairs.

    Header lines, daemon banner lines (``* daemon ...``), blank lines and
    stray carriage returns are ignored.

    Examples:
        >>> parse_device_list("List of devices attached\\r\\n1WMHH\\tdevice\\r\\n\\r\\n")
        [('1WMHH', 'device')]
    """
    devices: list[tuple[str, str]] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("*") or line.lower().startswith(_DEVICE_LIST_HEADER):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        devices.append((parts[0], parts[1]))
    return devices


def classify_devices(devices: list[tuple[str, str]]) -> tuple[ConnectivityState, str | None]:
    """Derive the connectivity state from the first enumerated device.

    Only ``device`` and ``unauthorized`` are surfaced; transient bridge states
    such as ``offline`` or ``authorizing`` count as disconnected.
    """
    if not devices:
        return ConnectivityState.DISCONNECTED, None

    serial, raw_state = devices[0]
    if raw_state == UNAUTHORIZED_DEVICE_STATE:
        return ConnectivityState.UNAUTHORIZED, serial
    if raw_state == ONLINE_DEVICE_STATE:
        return ConnectivityState.ONLINE, serial
    return ConnectivityState.DISCONNECTED, serial


def is_bridge_server_running() -> bool:
    """Check the process table for a running bridge server daemon."""
    # psutil.process_iter returns Iterator[Process] but type checker sees it as partially unknown
    for proc in psutil.process_iter(["name", "cmdline"]):  # pyright: ignore[reportUnknownMemberType]
        try:
            name: str = proc.info["name"] or ""  # pyright: ignore[reportAny]
            cmdline: list[str] = proc.info["cmdline"] or []  # pyright: ignore[reportAny]
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        if not name.lower().startswith("adb"):
            continue
        if "fork-server" in cmdline or "server" in cmdline:
            return True
    return False


def classify_start_output(output: str, *, was_running: bool) -> BridgeServerStartResult:
    """Map ``start-server`` output onto a start result."""
    lowered = output.lower()
    if any(marker in lowered for marker in _OUTDATED_MARKERS):
        return BridgeServerStartResult.RESTARTED_OUTDATED
    if was_running and "daemon started" not in lowered:
        return BridgeServerStartResult.ALREADY_RUNNING
    return BridgeServerStartResult.STARTED


class ConnectivityMonitor:
    """Poll device enumeration and publish connectivity state changes.

    The monitor exclusively owns the current :class:`DeviceSession`; other
    components only read the latest snapshot through :attr:`session`.
    """

    def __init__(
        self,
        executor: BridgeExecutor,
        *,
        bridge: BridgeConfig,
        timeouts: TimeoutsConfig,
        events: EngineEvents,
        gate: asyncio.Lock | None = None,
        server_check: Callable[[], bool] = is_bridge_server_running,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._executor: BridgeExecutor = executor
        self._poll_interval: float = bridge.poll_interval_ms / 1000.0
        self._timeouts: TimeoutsConfig = timeouts
        self._events: EngineEvents = events
        self._gate: asyncio.Lock = gate or asyncio.Lock()
        self._server_check: Callable[[], bool] = server_check
        self._clock: Callable[[], datetime] = clock
        self._last_state: ConnectivityState = ConnectivityState.INIT_PENDING
        self._session: DeviceSession = DeviceSession(
            serial=None,
            state=ConnectivityState.INIT_PENDING,
            observed_at=clock(),
        )

    @property
    def session(self) -> DeviceSession:
        """Latest device session snapshot."""
        return self._session

    @property
    def state(self) -> ConnectivityState:
        """Last published connectivity state."""
        return self._last_state

    @property
    def gate(self) -> asyncio.Lock:
        """Lock serializing all bridge access between polls and fetches."""
        return self._gate

    def _publish_if_changed(self, state: ConnectivityState, serial: str | None) -> bool:
        if state == self._last_state:
            return False

        previous = self._last_state
        self._last_state = state
        if state is ConnectivityState.ONLINE:
            logger.info("Device connected", extra={"serial": serial})
        logger.debug(
            "Connectivity state changed",
            extra={"previous_state": previous.value, "new_state": state.value, "serial": serial},
        )
        self._events.connectivity_changed(previous, state, serial)
        return True

    async def start_bridge_server(self) -> BridgeServerStartResult:
        """Start the bridge server, or reuse one that is already running.

        Returns:
            How the server became ready; every outcome means ready

        Raises:
            BridgeServerStartFailed: If the server could not be started. The
                failure is also published on the error channel; no retry is
                attempted.
        """
        logger.debug("Starting bridge server")
        try:
            was_running = await asyncio.to_thread(self._server_check)
            result = await self._executor.run(["start-server"], timeout=_SERVER_START_TIMEOUT_SECONDS)
        except (BridgeError, OSError) as exc:
            error = BridgeServerStartFailed(f"Failed to start bridge server: {exc}", cause=exc)
            logger.error("Bridge server start failed", extra={"error": str(exc)})
            self._events.error(error)
            raise error from exc

        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
            error = BridgeServerStartFailed(f"Failed to start bridge server: {detail}")
            logger.error("Bridge server start failed", extra={"error": detail})
            self._events.error(error)
            raise error

        outcome = classify_start_output(result.stdout + result.stderr, was_running=was_running)
        logger.debug("Bridge server ready", extra={"outcome": outcome.value})
        self._session = DeviceSession(
            serial=None,
            state=ConnectivityState.ADB_SERVER_READY,
            observed_at=self._clock(),
        )
        _ = self._publish_if_changed(ConnectivityState.ADB_SERVER_READY, None)
        return outcome

    async def poll_once(self) -> DeviceSession:
        """Enumerate devices once and publish the state if it changed.

        A failed or timed-out enumeration is treated as disconnected.

        Returns:
            The new device session snapshot
        """
        try:
            output = await self._executor.execute(
                ["devices"],
                timeout=self._timeouts.seconds("device_list"),
            )
        except (BridgeError, OSError) as exc:
            logger.warning("Device enumeration failed", extra={"error": str(exc)})
            state, serial = ConnectivityState.DISCONNECTED, None
        else:
            state, serial = classify_devices(parse_device_list(output))

        session = DeviceSession(serial=serial, state=state, observed_at=self._clock())
        self._session = session
        _ = self._publish_if_changed(state, serial)
        return session

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set.

        Ticks are skipped while a fetch holds the gate; the poll body itself
        runs under the gate so a fetch waits for an in-flight poll to finish.
        """
        logger.info(
            "Starting connectivity monitor",
            extra={"poll_interval": self._poll_interval},
        )
        try:
            while not stop_event.is_set():
                if not self._gate.locked():
                    async with self._gate:
                        _ = await self.poll_once()

                try:
                    async with asyncio.timeout(self._poll_interval):
                        _ = await stop_event.wait()
                except TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Connectivity monitor cancelled")
            raise
        logger.info("Connectivity monitor stopped")
