"""Type definitions and protocols for report-fetch.

This package provides:
- Data models (dataclasses and state enums)
- Protocol definitions (structural subtyping interfaces)
"""

from report_fetch.types.models import (
    ArchivePolicy,
    ArchiveReport,
    BridgeServerStartResult,
    CommandResult,
    ConnectivityState,
    DeviceSession,
    DownloadStatus,
    TransferBatch,
)
from report_fetch.types.protocols import BridgeExecutor

__all__ = [
    # Data models
    "ArchivePolicy",
    "ArchiveReport",
    "BridgeServerStartResult",
    "CommandResult",
    "ConnectivityState",
    "DeviceSession",
    "DownloadStatus",
    "TransferBatch",
    # Protocols
    "BridgeExecutor",
]
