"""
Command Execution Channel - Run shell commands inside a sandbox.

Commands run through `bash -c` with the sandbox working root as cwd and
stdout/stderr combined into one stream. The stream is drained on a worker
thread and raced against a timer:

- stream ends first: the accumulated text is returned
- timer fires first: ExecutionTimeout is raised and the exec connection is
  shut down, which frees the worker thread; the process itself may keep
  running inside the container, we only stop waiting for it

Two timeout profiles exist: short (file listing/reading, ~10s) and long
(dependency installs and general commands, ~30s). Long-running servers are
started detached and never awaited.
"""

import asyncio
import logging
from pathlib import PurePosixPath
from typing import List, Optional

import docker
from docker.utils.socket import frames_iter

from aidev.config import SandboxSettings
from aidev.errors import ExecutionTimeout, PathInvalid
from aidev.sandbox.engine import ENGINE_ERRORS, close_stream, interrupt_stream, run_blocking, translate_error
from aidev.utils import shell_quote

logger = logging.getLogger(__name__)

# Printed by read_file when the requested file is absent
FILE_MISSING_MARKER = "__aidev_file_missing__"

# Directories left out of in-sandbox listings
LISTING_PRUNE = ("node_modules", ".git")


class CommandChannel:
    """Runs commands in sandboxes through the Docker exec API."""

    def __init__(self, client: docker.DockerClient, settings: SandboxSettings):
        self._client = client
        self._settings = settings

    @property
    def short_timeout(self) -> float:
        return self._settings.short_timeout

    @property
    def long_timeout(self) -> float:
        return self._settings.long_timeout

    def _shell(self, command: str) -> List[str]:
        return ["bash", "-c", command]

    async def _create_exec(self, sandbox_id: str, command: str) -> str:
        try:
            result = await run_blocking(
                self._client.api.exec_create,
                sandbox_id,
                self._shell(command),
                stdout=True,
                stderr=True,
                workdir=self._settings.working_root,
            )
        except ENGINE_ERRORS as e:
            raise translate_error(e, f"exec {command!r}", sandbox_id) from e
        return result["Id"]

    def _drain(self, stream) -> bytes:
        """Read the multiplexed exec stream to its end, then close it."""
        try:
            return b"".join(data for _, data in frames_iter(stream, tty=False))
        finally:
            close_stream(stream)

    async def _execute(self, sandbox_id: str, command: str) -> str:
        exec_id = await self._create_exec(sandbox_id, command)
        try:
            stream = await run_blocking(self._client.api.exec_start, exec_id, socket=True)
        except ENGINE_ERRORS as e:
            raise translate_error(e, f"exec {command!r}", sandbox_id) from e

        try:
            data = await run_blocking(self._drain, stream)
        except asyncio.CancelledError:
            # Unblocks the worker thread still waiting on the stream
            interrupt_stream(stream)
            raise
        except (*ENGINE_ERRORS, OSError) as e:
            raise translate_error(e, f"exec {command!r}", sandbox_id) from e
        return data.decode("utf-8", errors="replace")

    async def run(self, sandbox_id: str, command: str, timeout: Optional[float] = None) -> str:
        """
        Run a command and return its combined output.

        Args:
            sandbox_id: Target container id
            command: Shell command line
            timeout: Seconds to wait, defaults to the long profile

        Raises:
            ExecutionTimeout: if the command did not finish in time
            EngineError: if Docker rejected the exec
        """
        timeout = timeout if timeout is not None else self.long_timeout
        logger.info(f"Running in {sandbox_id[:12]}: {command}")

        try:
            output = await asyncio.wait_for(self._execute(sandbox_id, command), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Command timed out after {timeout:g}s in {sandbox_id[:12]}: {command}")
            raise ExecutionTimeout(command, timeout, sandbox_id) from None

        logger.debug(f"Command output ({len(output)} chars): {output[-500:]}")
        return output

    async def run_short(self, sandbox_id: str, command: str) -> str:
        """Run a read-style command with the short timeout."""
        return await self.run(sandbox_id, command, timeout=self.short_timeout)

    async def run_detached(self, sandbox_id: str, command: str) -> str:
        """
        Start a background process and return once the launch is confirmed.

        The process is never awaited; whether it is still alive is not
        tracked here.

        Returns:
            The exec id of the launched process
        """
        exec_id = await self._create_exec(sandbox_id, command)
        try:
            await run_blocking(self._client.api.exec_start, exec_id, detach=True)
        except ENGINE_ERRORS as e:
            raise translate_error(e, f"detached exec {command!r}", sandbox_id) from e
        logger.info(f"Started detached in {sandbox_id[:12]}: {command}")
        return exec_id

    async def list_files(self, sandbox_id: str) -> List[str]:
        """List files and directories under the working root of the live sandbox."""
        prune = " -o ".join(f"-name {name}" for name in LISTING_PRUNE)
        command = f"find . -mindepth 1 \\( {prune} \\) -prune -o -print | sed 's|^\\./||'"
        output = await self.run_short(sandbox_id, command)
        return [line for line in output.splitlines() if line.strip()]

    async def read_file(self, sandbox_id: str, path: str) -> str:
        """
        Read a file from the live sandbox.

        Raises:
            PathInvalid: if the path escapes the working root or does not exist
        """
        posix = PurePosixPath(path)
        if not path or posix.is_absolute() or ".." in posix.parts:
            raise PathInvalid(path, sandbox_id, "path must be relative to the working root")

        quoted = shell_quote(path)
        command = f"if [ -f {quoted} ]; then cat -- {quoted}; else printf {FILE_MISSING_MARKER}; fi"
        output = await self.run_short(sandbox_id, command)
        if output == FILE_MISSING_MARKER:
            raise PathInvalid(path, sandbox_id, "file does not exist in sandbox")
        return output
