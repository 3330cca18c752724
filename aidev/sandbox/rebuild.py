"""
Rebuild Pipeline - Resync files, reinstall dependencies, restart the dev server.

Steps run strictly in order:

1. kill any running dev server (best-effort, failures ignored)
2. push the workspace mirror into the sandbox
3. install dependencies (long timeout)
4. launch the dev server detached on the sandbox port

A failure in steps 2-4 is logged and raised as RebuildFailed naming the
step. Nothing is rolled back; the next rebuild is expected to converge.
Only one rebuild per sandbox may be in flight at a time.
"""

import logging
from typing import Set

from aidev.config import SandboxSettings
from aidev.errors import RebuildFailed, SandboxError
from aidev.sandbox.executor import CommandChannel
from aidev.sandbox.sync import WorkspaceSync

logger = logging.getLogger(__name__)

# The bracket keeps the pattern from matching the invoking shell's own command line
KILL_DEV_SERVER_COMMAND = 'pkill -f "[v]ite" || true'
INSTALL_COMMAND = "npm install"
DEV_SERVER_COMMAND = "npm run dev -- --host 0.0.0.0 --port {port}"


class RebuildPipeline:
    """Composes sync and command execution into a rebuild."""

    def __init__(self, sync: WorkspaceSync, channel: CommandChannel, settings: SandboxSettings):
        self._sync = sync
        self._channel = channel
        self._settings = settings
        self._in_flight: Set[str] = set()

    def is_running(self, sandbox_id: str) -> bool:
        return sandbox_id in self._in_flight

    async def _kill_dev_server(self, sandbox_id: str) -> None:
        try:
            await self._channel.run(sandbox_id, KILL_DEV_SERVER_COMMAND, timeout=self._settings.short_timeout)
        except SandboxError as e:
            logger.warning(f"Could not stop dev server in {sandbox_id[:12]}, continuing: {e}")

    async def rebuild(self, sandbox_id: str, port: int) -> None:
        """
        Rebuild the project inside a sandbox.

        Args:
            sandbox_id: Target container id
            port: Port the dev server must listen on

        Raises:
            RebuildFailed: with step "busy", "sync", "install" or "start"
        """
        if self.is_running(sandbox_id):
            raise RebuildFailed("busy", sandbox_id)

        self._in_flight.add(sandbox_id)
        logger.info(f"Rebuilding project in {sandbox_id[:12]} on port {port}")
        step = "kill"
        try:
            await self._kill_dev_server(sandbox_id)

            step = "sync"
            await self._sync.push(sandbox_id)

            step = "install"
            logger.info("Installing dependencies...")
            await self._channel.run(sandbox_id, INSTALL_COMMAND, timeout=self._settings.long_timeout)

            step = "start"
            logger.info("Starting dev server...")
            await self._channel.run_detached(sandbox_id, DEV_SERVER_COMMAND.format(port=port))
        except SandboxError as e:
            logger.error(f"Rebuild of {sandbox_id[:12]} failed at {step}: {e}")
            raise RebuildFailed(step, sandbox_id, e) from e
        finally:
            self._in_flight.discard(sandbox_id)

        logger.info(f"Project in {sandbox_id[:12]} rebuilt successfully")
