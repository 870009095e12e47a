"""Remote filesystem operations issued through the device shell.

Remote paths are always wrapped in single quotes before they reach the
device shell so spaces and punctuation survive literally, and they are
normalized to forward slashes first because hosts may express them with
native separators.

Listing output is line-oriented text from ``ls -F``: directories carry a
trailing ``/``, and the shell layer may inject stray ``\\r`` and ``\\t``
characters that must be stripped before names are used.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Final

from report_fetch.types import BridgeExecutor

if TYPE_CHECKING:
    from report_fetch.core.config import TimeoutsConfig

__all__ = [
    "DIRECTORY_MARKER",
    "RemoteShell",
    "join_remote",
    "normalize_remote_path",
    "parse_listing",
    "quote_remote",
]

logger = logging.getLogger(__name__)

DIRECTORY_MARKER: Final[str] = "/"
_CONTROL_CHARS: Final[re.Pattern[str]] = re.compile(r"[\t\r]")


def normalize_remote_path(path: str) -> str:
    """Convert host-style separators and drop trailing slashes.

    Examples:
        >>> normalize_remote_path("sdcard\\\\Documents\\\\")
        'sdcard/Documents'
        >>> normalize_remote_path("/")
        '/'
    """
    normalized = path.replace("\\", "/")
    stripped = normalized.rstrip("/")
    return stripped or normalized[:1]


def join_remote(directory: str, name: str) -> str:
    """Join a remote directory and an entry name with a forward slash."""
    base = normalize_remote_path(directory)
    if base.endswith("/"):
        return f"{base}{name}"
    return f"{base}/{name}"


def quote_remote(path: str) -> str:
    """Wrap ``path`` in single quotes for the device shell.

    Embedded single quotes are closed, escaped and reopened.

    Examples:
        >>> quote_remote("/sdcard/My Reports/a.pdf")
        "'/sdcard/My Reports/a.pdf'"
    """
    return "'" + path.replace("'", "'\"'\"'") + "'"


def parse_listing(output: str) -> list[str]:
    """Parse ``ls -F`` output into entry names, dropping directories.

    Order is preserved. Control characters are stripped, blank lines and
    directory-suffixed entries are discarded.
    """
    entries: list[str] = []
    for line in output.split("\n"):
        name = _CONTROL_CHARS.sub("", line).strip()
        if not name or name.endswith(DIRECTORY_MARKER):
            continue
        entries.append(name)
    return entries


class RemoteShell:
    """Shell commands against one device, each bounded by its own timeout."""

    def __init__(
        self,
        executor: BridgeExecutor,
        timeouts: TimeoutsConfig,
    ) -> None:
        self._executor: BridgeExecutor = executor
        self._timeouts: TimeoutsConfig = timeouts

    @property
    def executor(self) -> BridgeExecutor:
        """Underlying bridge executor."""
        return self._executor

    async def _run(self, serial: str, command: Sequence[str], timeout: float) -> str:
        return await self._executor.shell(serial, command, timeout=timeout)

    async def list_files(self, serial: str, directory: str, *, oldest_first: bool = True) -> list[str]:
        """List non-directory entries of ``directory``.

        With ``oldest_first`` the listing is sorted by modification time,
        oldest first (``ls -F -tr``); otherwise one entry per line in the
        shell's default order (``ls -1F``).
        """
        flags = ["-F", "-tr"] if oldest_first else ["-1F"]
        output = await self._run(
            serial,
            ["ls", *flags, quote_remote(normalize_remote_path(directory))],
            self._timeouts.seconds("default_command"),
        )
        logger.debug(
            "Raw remote listing",
            extra={"directory": directory, "output": output},
        )
        return parse_listing(output)

    async def is_directory(self, serial: str, path: str) -> bool:
        """Check whether ``path`` is a directory on the device."""
        output = await self._run(
            serial,
            ["[", "-d", quote_remote(normalize_remote_path(path)), "]", "&&", "echo", "DIR", "||", "echo", "FILE"],
            self._timeouts.seconds("file_check"),
        )
        return output.strip() == "DIR"

    async def is_file(self, serial: str, path: str) -> bool:
        """Check whether ``path`` is a regular file on the device."""
        output = await self._run(
            serial,
            ["[", "-f", quote_remote(normalize_remote_path(path)), "]", "&&", "echo", "OK"],
            self._timeouts.seconds("file_check"),
        )
        return output.strip() == "OK"

    async def make_directory(self, serial: str, path: str) -> None:
        """Create ``path`` and its parents; existing directories are fine."""
        _ = await self._run(
            serial,
            ["mkdir", "-p", quote_remote(normalize_remote_path(path))],
            self._timeouts.seconds("mkdir"),
        )

    async def copy(self, serial: str, source: str, destination: str) -> None:
        """Copy a remote file to another remote path."""
        _ = await self._run(
            serial,
            ["cp", quote_remote(normalize_remote_path(source)), quote_remote(normalize_remote_path(destination))],
            self._timeouts.seconds("copy"),
        )

    async def remove(self, serial: str, path: str, *, timeout_key: str = "remove") -> None:
        """Remove a remote file."""
        _ = await self._run(
            serial,
            ["rm", quote_remote(normalize_remote_path(path))],
            self._timeouts.seconds(timeout_key),
        )

    async def disk_usage(self, serial: str, path: str) -> str:
        """Return the human-readable size of ``path`` as reported by ``du -hs``."""
        output = await self._run(
            serial,
            ["du", "-hs", quote_remote(normalize_remote_path(path))],
            self._timeouts.seconds("default_command"),
        )
        return _CONTROL_CHARS.split(output.strip(), maxsplit=1)[0].strip()

    async def pull(self, serial: str, remote_path: str, destination: Path) -> None:
        """Pull one remote file into a newly created local file."""
        await self._executor.pull(
            serial,
            normalize_remote_path(remote_path),
            destination,
            timeout=self._timeouts.seconds("pull"),
        )
