"""Bridge command execution with hard timeouts.

Every call spawns exactly one bridge process from a structured argument
list (no host shell is involved) and races its exit against a time budget:

- Output is drained concurrently so a chatty process can never block on a
  full pipe while we wait for it to exit.
- On timeout or task cancellation the process is killed and reaped before
  control returns, so a slow bridge cannot accumulate leaked processes.
- After a normal exit a short grace window lets buffered output arrive,
  since the exit notification can overtake the last pipe reads.

Retries are never attempted here. Callers own retry policy because blindly
repeating a destructive command (``rm``, ``cp``) is unsafe.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import BinaryIO, Final

from report_fetch.core.errors import CommandFailed, CommandTimeout, IOConflict
from report_fetch.types import CommandResult

__all__ = ["CommandExecutor", "DEFAULT_FLUSH_GRACE_SECONDS"]

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_GRACE_SECONDS: Final[float] = 0.5
_READ_CHUNK: Final[int] = 64 * 1024
_EXIT_POLL_SECONDS: Final[float] = 0.01


async def _drain(stream: asyncio.StreamReader | None, sink: list[bytes]) -> None:
    if stream is None:
        return
    while chunk := await stream.read(_READ_CHUNK):
        sink.append(chunk)


async def _wait_for_exit(process: asyncio.subprocess.Process) -> int:
    """Wait until ``process`` has exited and been reaped.

    ``Process.wait`` also waits for both pipes to close, which never happens
    while a daemon forked by the bridge (``start-server``) holds them open.
    """
    while (returncode := process.returncode) is None:
        await asyncio.sleep(_EXIT_POLL_SECONDS)
    return returncode


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill ``process`` if it is still alive and wait until it is reaped."""
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
    _ = await _wait_for_exit(process)


async def _cancel_readers(readers: Sequence[asyncio.Task[None]]) -> None:
    for reader in readers:
        _ = reader.cancel()
    _ = await asyncio.gather(*readers, return_exceptions=True)


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


def _copy_into(source: Path, handle: BinaryIO) -> None:
    with source.open("rb") as src:
        shutil.copyfileobj(src, handle)


class CommandExecutor:
    """Run bridge commands as child processes with per-call timeouts."""

    def __init__(
        self,
        bridge_path: str = "adb",
        *,
        flush_grace: float = DEFAULT_FLUSH_GRACE_SECONDS,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        if flush_grace < 0:
            msg = "flush_grace must not be negative"
            raise ValueError(msg)

        self._bridge_path: str = bridge_path
        self._flush_grace: float = flush_grace
        self._logger: logging.Logger = logger_obj or logger

    @property
    def bridge_path(self) -> str:
        """Path or name of the bridge binary."""
        return self._bridge_path

    async def run(self, args: Sequence[str], *, timeout: float) -> CommandResult:
        """Run the bridge binary with ``args`` and capture its output.

        Args:
            args: Arguments passed to the bridge binary
            timeout: Time budget in seconds (keyword-only)

        Returns:
            CommandResult with decoded stdout/stderr and the exit code

        Raises:
            CommandTimeout: If the process did not exit within ``timeout``
            OSError: If the bridge binary cannot be launched
        """
        if timeout <= 0:
            msg = "timeout must be greater than zero"
            raise ValueError(msg)

        arguments = tuple(args)
        self._logger.debug(
            "Executing bridge command",
            extra={"command": list(arguments), "timeout": timeout},
        )

        process = await asyncio.create_subprocess_exec(
            self._bridge_path,
            *arguments,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        readers = (
            asyncio.create_task(_drain(process.stdout, stdout_chunks)),
            asyncio.create_task(_drain(process.stderr, stderr_chunks)),
        )

        try:
            async with asyncio.timeout(timeout):
                returncode = await _wait_for_exit(process)
        except TimeoutError:
            await _terminate(process)
            await _cancel_readers(readers)
            self._logger.error(
                "Bridge command timed out",
                extra={"command": list(arguments), "timeout": timeout, "pid": process.pid},
            )
            raise CommandTimeout(arguments, timeout_seconds=timeout, pid=process.pid) from None
        except asyncio.CancelledError:
            await _terminate(process)
            await _cancel_readers(readers)
            raise

        # Pipes may lag the exit, or stay open in a forked daemon
        _, pending = await asyncio.wait(readers, timeout=self._flush_grace)
        if pending:
            await _cancel_readers(tuple(pending))

        return CommandResult(
            args=arguments,
            stdout=_decode(stdout_chunks),
            stderr=_decode(stderr_chunks),
            returncode=returncode,
        )

    async def execute(self, args: Sequence[str], *, timeout: float) -> str:
        """Run a bridge command and return its stdout.

        A non-zero exit only counts as a failure when the process also wrote
        to stderr; shell tests such as ``[ -f x ] && echo OK`` legitimately
        exit non-zero with no error text.

        Raises:
            CommandTimeout: If the process did not exit within ``timeout``
            CommandFailed: If the process exited non-zero with stderr text
        """
        result = await self.run(args, timeout=timeout)
        if result.returncode != 0 and result.stderr.strip():
            self._logger.error(
                "Bridge command failed",
                extra={
                    "command": list(result.args),
                    "returncode": result.returncode,
                    "stderr": result.stderr.strip(),
                },
            )
            raise CommandFailed(result.args, returncode=result.returncode, stderr=result.stderr)
        return result.stdout

    async def shell(self, serial: str, command: Sequence[str], *, timeout: float) -> str:
        """Run ``command`` in the device shell of ``serial``.

        The bridge joins the arguments with spaces and hands the line to the
        device shell, so callers must quote remote paths themselves.
        """
        return await self.execute(["-s", serial, "shell", *command], timeout=timeout)

    async def pull(
        self,
        serial: str,
        remote_path: str,
        destination: Path,
        *,
        timeout: float,
    ) -> None:
        """Copy one remote file into a newly created local file.

        The destination is created with exclusive-create semantics before the
        transfer begins, so a concurrent writer makes this call fail instead of
        being overwritten. The sync transfer lands in a staging file beside the
        destination and is then streamed into it.

        Args:
            serial: Device serial
            remote_path: Remote file path (passed verbatim, no shell involved)
            destination: Local file to create
            timeout: Time budget in seconds for the sync transfer

        Raises:
            IOConflict: If ``destination`` already exists
            CommandTimeout: If the transfer did not finish within ``timeout``
            CommandFailed: If the bridge reported a failed transfer
        """
        try:
            handle = destination.open("xb")
        except FileExistsError as exc:
            raise IOConflict(destination) from exc

        completed = False
        staging: Path | None = None
        try:
            with handle:
                fd, staging_name = tempfile.mkstemp(
                    prefix=f".{destination.name}.",
                    suffix=".part",
                    dir=destination.parent,
                )
                os.close(fd)
                staging = Path(staging_name)

                result = await self.run(
                    ["-s", serial, "pull", remote_path, str(staging)],
                    timeout=timeout,
                )
                if result.returncode != 0:
                    stderr = result.stderr.strip() or result.stdout.strip()
                    raise CommandFailed(result.args, returncode=result.returncode, stderr=stderr)

                await asyncio.to_thread(_copy_into, staging, handle)
            completed = True
        finally:
            if staging is not None:
                staging.unlink(missing_ok=True)
            if not completed:
                # A partial file would make the next run skip this report
                destination.unlink(missing_ok=True)

        self._logger.debug(
            "Pulled remote file",
            extra={"remote_path": remote_path, "destination": str(destination)},
        )
