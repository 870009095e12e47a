"""Error taxonomy for bridge commands and the fetch pipeline.

Scope of each error:

- ``CommandTimeout`` / ``CommandFailed``: one external command; per-file
  callers catch these and continue with the next file.
- ``ListingFailed`` / ``DeviceUnavailable``: fatal to the whole batch.
- ``BridgeServerStartFailed``: fatal to the connectivity attempt; the caller
  decides whether to retry.
- ``IOConflict``: the local destination already exists; callers treat it as
  a successful skip.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

__all__ = [
    "BridgeError",
    "BridgeServerStartFailed",
    "CommandFailed",
    "CommandTimeout",
    "DeviceUnavailable",
    "IOConflict",
    "ListingFailed",
]


def _format_args(args: Sequence[str]) -> str:
    return " ".join(args)


class BridgeError(Exception):
    """Base exception for device bridge failures."""


class CommandTimeout(BridgeError):
    """Raised when a bridge command exceeds its time budget.

    The process has already been killed and reaped when this is raised.
    """

    args_list: tuple[str, ...]
    timeout_seconds: float
    pid: int | None

    def __init__(
        self,
        args: Sequence[str],
        *,
        timeout_seconds: float,
        pid: int | None = None,
    ) -> None:
        self.args_list = tuple(args)
        self.timeout_seconds = timeout_seconds
        self.pid = pid
        super().__init__(
            f"Bridge command timed out after {timeout_seconds * 1000:.0f}ms: {_format_args(args)}"
        )


class CommandFailed(BridgeError):
    """Raised when a bridge command exits non-zero and reports an error."""

    args_list: tuple[str, ...]
    returncode: int
    stderr: str

    def __init__(self, args: Sequence[str], *, returncode: int, stderr: str) -> None:
        self.args_list = tuple(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Bridge command failed with exit code {returncode}: {stderr.strip()}"
        )


class ListingFailed(BridgeError):
    """Raised when the remote reports directory cannot be listed."""

    remote_path: str

    def __init__(self, remote_path: str, *, cause: BaseException | None = None) -> None:
        self.remote_path = remote_path
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to list remote directory {remote_path}{detail}")
        if cause is not None:
            self.__cause__ = cause


class DeviceUnavailable(BridgeError):
    """Raised when a fetch is requested without an online device."""


class BridgeServerStartFailed(BridgeError):
    """Raised when the bridge server cannot be started or reached."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause


class IOConflict(BridgeError):
    """Raised when a local destination file already exists."""

    path: Path

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Destination already exists: {path}")
