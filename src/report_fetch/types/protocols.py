"""Protocol definitions for component interfaces.

This module defines structural subtyping protocols that let the pipeline,
archive engine and monitor run against the real bridge executor or a
scripted stand-in.
"""

from collections.abc import Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from report_fetch.types.models import CommandResult


@runtime_checkable
class BridgeExecutor(Protocol):
    """Protocol for running bridge commands against a device."""

    async def run(self, args: Sequence[str], *, timeout: float) -> CommandResult:
        """Run the bridge binary with ``args`` and capture its output.

        Raises:
            CommandTimeout: If the process outlives ``timeout`` seconds
        """
        ...

    async def execute(self, args: Sequence[str], *, timeout: float) -> str:
        """Run the bridge binary and return stdout.

        Raises:
            CommandTimeout: If the process outlives ``timeout`` seconds
            CommandFailed: If the process exits non-zero with stderr text
        """
        ...

    async def shell(self, serial: str, command: Sequence[str], *, timeout: float) -> str:
        """Run a device shell command on ``serial`` and return stdout."""
        ...

    async def pull(
        self,
        serial: str,
        remote_path: str,
        destination: Path,
        *,
        timeout: float,
    ) -> None:
        """Copy one remote file into a newly created local file.

        Raises:
            IOConflict: If ``destination`` already exists
        """
        ...
