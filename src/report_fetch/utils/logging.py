"""Logging infrastructure with correlation ID tracking and optional syslog.

Every fetch batch and archive pass runs under its own correlation ID, held in
a ContextVar, so the interleaved log lines of a polling loop and a running
batch can be told apart. A filter copies the current ID onto each record.
"""

import contextvars
import logging
import logging.handlers
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Final, override

# Inherited by asyncio tasks created within the same context
correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "report_fetch_correlation_id",
    default=None,
)

NO_CORRELATION_ID: Final[str] = "N/A"

DEFAULT_LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)-8s [%(correlation_id)s] %(name)s: %(message)s"

SYSLOG_LOG_FORMAT: Final[str] = "report-fetch[%(process)d]: %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"

DEFAULT_SYSLOG_ADDRESS: Final[str] = "/dev/log"


class CorrelationIDFilter(logging.Filter):
    """Stamp each record with the correlation ID of the current context."""

    @override
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or NO_CORRELATION_ID
        return True


def _attach(root: logging.Logger, handler: logging.Handler, fmt: str, stamp: CorrelationIDFilter) -> None:
    handler.setFormatter(logging.Formatter(fmt))
    handler.addFilter(stamp)
    root.addHandler(handler)


def configure_logging(
    *,
    log_level: str = "INFO",
    enable_syslog: bool = False,
    syslog_address: str = DEFAULT_SYSLOG_ADDRESS,
    enable_console: bool = True,
) -> None:
    """Install the root handlers, replacing any configured before.

    Args:
        log_level: Level name; unknown names fall back to INFO
        enable_syslog: Also log to the local syslog daemon
        syslog_address: Unix socket of the syslog daemon
        enable_console: Log to stdout

    Example:
        >>> configure_logging(log_level="DEBUG")
        >>> with correlation_scope("fetch"):
        ...     logging.getLogger("report_fetch").info("Fetching", extra={"serial": "1WMHH"})
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO))

    stamp = CorrelationIDFilter()

    if enable_syslog:
        try:
            syslog = logging.handlers.SysLogHandler(
                address=syslog_address,
                facility=logging.handlers.SysLogHandler.LOG_DAEMON,
            )
        except OSError as exc:
            # Console output still works without a syslog daemon
            print(f"Warning: Could not connect to syslog at {syslog_address}: {exc}", file=sys.stderr)
        else:
            _attach(root, syslog, SYSLOG_LOG_FORMAT, stamp)

    if enable_console:
        _attach(root, logging.StreamHandler(sys.stdout), DEFAULT_LOG_FORMAT, stamp)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Run a block under a fresh ``<prefix>-<8 hex>`` ID, then restore the previous one."""
    token = correlation_id_var.set(f"{prefix}-{uuid.uuid4().hex[:8]}")
    try:
        yield correlation_id_var.get() or NO_CORRELATION_ID
    finally:
        correlation_id_var.reset(token)
