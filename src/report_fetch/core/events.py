"""Event channel between the engine and its presentation layer.

The engine publishes four topics; any number of handlers may subscribe:

- ``connectivity.changed``: a new :class:`ConnectivityState` (changes only)
- ``download.changed``: a new :class:`DownloadStatus`
- ``transfer.progress``: ``(done, total)`` after every processed file
- ``engine.error``: an exception surfaced to the operator

Handlers run synchronously, in subscription order, on the publishing task.
A failing handler is logged and never interrupts delivery to the others or
the engine itself.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Final, override

from report_fetch.types import ConnectivityState, DownloadStatus

__all__ = [
    "CONNECTIVITY_CHANGED",
    "DOWNLOAD_CHANGED",
    "ENGINE_ERROR",
    "TRANSFER_PROGRESS",
    "ConnectivityChanged",
    "DownloadChanged",
    "EngineError",
    "EngineEvents",
    "EventSubscriptionError",
    "TransferProgress",
]

logger = logging.getLogger(__name__)

CONNECTIVITY_CHANGED: Final[str] = "connectivity.changed"
DOWNLOAD_CHANGED: Final[str] = "download.changed"
TRANSFER_PROGRESS: Final[str] = "transfer.progress"
ENGINE_ERROR: Final[str] = "engine.error"

_TOPICS: Final[frozenset[str]] = frozenset(
    {CONNECTIVITY_CHANGED, DOWNLOAD_CHANGED, TRANSFER_PROGRESS, ENGINE_ERROR}
)


class EventSubscriptionError(Exception):
    """Exception raised when event subscription fails."""

    def __init__(self, message: str, topic: str | None = None) -> None:
        super().__init__(message)
        self.topic: str | None = topic


@dataclass(frozen=True, slots=True)
class _BaseEvent:
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()), kw_only=True)
    timestamp: float = field(default_factory=time.time, kw_only=True)


@dataclass(frozen=True, slots=True)
class ConnectivityChanged(_BaseEvent):
    """Connectivity state changed from ``previous`` to ``state``."""

    previous: ConnectivityState
    state: ConnectivityState
    serial: str | None = None


@dataclass(frozen=True, slots=True)
class DownloadChanged(_BaseEvent):
    """Download status of the current batch changed."""

    status: DownloadStatus


@dataclass(frozen=True, slots=True)
class TransferProgress(_BaseEvent):
    """``done`` of ``total`` files in the current batch have been processed."""

    done: int
    total: int


@dataclass(frozen=True, slots=True)
class EngineError(_BaseEvent):
    """An error surfaced to the operator."""

    error: BaseException

    @override
    def __str__(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


type Event = ConnectivityChanged | DownloadChanged | TransferProgress | EngineError
type EventHandler = Callable[[Event], None]


class EngineEvents:
    """Topic based observer used to publish engine notifications."""

    def __init__(self) -> None:
        self._handlers: dict[str, dict[str, EventHandler]] = defaultdict(dict)

    def subscribe(self, topic: str, handler: EventHandler) -> str:
        """Register ``handler`` for ``topic``.

        Args:
            topic: One of the module-level topic constants
            handler: Callable receiving the published event

        Returns:
            Subscription id usable with :meth:`unsubscribe`

        Raises:
            EventSubscriptionError: If the topic is unknown
        """
        if topic not in _TOPICS:
            raise EventSubscriptionError(f"Unknown topic: {topic}", topic=topic)
        subscription_id = str(uuid.uuid4())
        self._handlers[topic][subscription_id] = handler
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        for handlers in self._handlers.values():
            if handlers.pop(subscription_id, None) is not None:
                return True
        return False

    def subscriber_count(self, topic: str) -> int:
        """Number of handlers registered for ``topic``."""
        return len(self._handlers.get(topic, {}))

    def publish(self, topic: str, event: Event) -> None:
        """Deliver ``event`` to every handler subscribed to ``topic``."""
        for subscription_id, handler in list(self._handlers.get(topic, {}).items()):
            try:
                handler(event)
            except Exception as exc:
                logger.exception(
                    "Event handler failed",
                    extra={
                        "topic": topic,
                        "event_id": event.event_id,
                        "subscription_id": subscription_id,
                        "error": str(exc),
                    },
                )

    def connectivity_changed(
        self,
        previous: ConnectivityState,
        state: ConnectivityState,
        serial: str | None = None,
    ) -> None:
        self.publish(CONNECTIVITY_CHANGED, ConnectivityChanged(previous=previous, state=state, serial=serial))

    def download_changed(self, status: DownloadStatus) -> None:
        self.publish(DOWNLOAD_CHANGED, DownloadChanged(status=status))

    def transfer_progress(self, done: int, total: int) -> None:
        self.publish(TRANSFER_PROGRESS, TransferProgress(done=done, total=total))

    def error(self, error: BaseException) -> None:
        self.publish(ENGINE_ERROR, EngineError(error=error))
