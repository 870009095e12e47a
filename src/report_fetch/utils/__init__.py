"""Shared utility modules.

This package provides the logging setup and correlation ID helpers used by
the engine and the command line entry point.
"""

from report_fetch.utils.logging import (
    CorrelationIDFilter,
    configure_logging,
    correlation_scope,
    get_correlation_id,
)

__all__ = [
    "CorrelationIDFilter",
    "configure_logging",
    "correlation_scope",
    "get_correlation_id",
]
