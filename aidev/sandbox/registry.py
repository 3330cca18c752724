"""
Sandbox Registry & Lifecycle Controller - Create, start, stop and remove sandboxes.

Responsibilities:
- Ensure the base image exists (pull, then fallback tag)
- Give every sandbox a unique name and a host port
- Create and start the container, then seed and build the project in the
  background so creation returns as soon as the container is running
- Idempotent start/stop, remove with a forced retry
- List sandboxes, fetch logs and resolve the bound port

The Docker client is passed in explicitly; nothing here reaches for a
global client.
"""

import asyncio
import logging
import re
import time
from functools import partial
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

import docker
from docker.errors import NotFound
from docker.models.containers import Container

from aidev.config import SandboxSettings
from aidev.errors import EngineError, SandboxError
from aidev.schemas import DOCKER_STATES, Sandbox, SandboxState
from aidev.sandbox.engine import ENGINE_ERRORS, get_container, ping, run_blocking, translate_error
from aidev.sandbox.executor import CommandChannel
from aidev.sandbox.images import ImagePuller
from aidev.sandbox.ports import PortAllocator
from aidev.sandbox.rebuild import RebuildPipeline
from aidev.sandbox.sync import WorkspaceSync
from aidev.sandbox.template import render_template
from aidev.sandbox.workspace import WorkspaceMirror
from aidev.utils import safe_project_name

logger = logging.getLogger(__name__)

# Container label marking sandboxes created by this engine
SANDBOX_LABEL = "aidev.sandbox"
PROJECT_LABEL = "aidev.project"

_TIMESTAMP_SUFFIX = re.compile(r"-\d+$")


# =============================================================================
# ENGINE METADATA HELPERS
# =============================================================================

def port_from_attrs(attrs: dict) -> Optional[int]:
    """
    Find the host port bound for a container.

    Runtime bindings (NetworkSettings.Ports) are preferred; the configured
    bindings (HostConfig.PortBindings) cover stopped containers.
    """
    sources = [
        (attrs.get("NetworkSettings") or {}).get("Ports") or {},
        (attrs.get("HostConfig") or {}).get("PortBindings") or {},
    ]
    for bindings in sources:
        for container_port in sorted(bindings):
            entries = bindings[container_port]
            if not entries:
                continue
            for entry in entries:
                host_port = entry.get("HostPort")
                if host_port:
                    return int(host_port)
    return None


def parse_created(value: Optional[str]) -> Optional[datetime]:
    """Parse Docker's RFC 3339 timestamps, which carry nanoseconds."""
    if not value:
        return None
    match = re.match(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})?$", value)
    if not match:
        return None
    base, fraction, zone = match.groups()
    fraction = (fraction or ".0")[:7]
    zone = "+00:00" if zone in (None, "Z") else zone
    return datetime.fromisoformat(f"{base}{fraction}{zone}")


# =============================================================================
# CONTROLLER
# =============================================================================

class SandboxController:
    """
    Owns the lifecycle of every sandbox.

    Name generation and port allocation are serialized; everything else may
    run concurrently for different sandboxes.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        mirror: WorkspaceMirror,
        ports: PortAllocator,
        settings: SandboxSettings,
        images: Optional[ImagePuller] = None,
        sync: Optional[WorkspaceSync] = None,
        channel: Optional[CommandChannel] = None,
        rebuilder: Optional[RebuildPipeline] = None,
    ):
        self._client = client
        self._mirror = mirror
        self._ports = ports
        self._settings = settings
        self._images = images or ImagePuller(client)
        self._sync = sync or WorkspaceSync(client, mirror, settings)
        self._channel = channel or CommandChannel(client, settings)
        self._rebuilder = rebuilder or RebuildPipeline(self._sync, self._channel, settings)

        self._name_lock = asyncio.Lock()
        self._last_stamp = 0
        self._states: Dict[str, SandboxState] = {}
        self._init_tasks: Dict[str, asyncio.Task] = {}
        self._init_results: Dict[str, bool] = {}
        self._ports_by_id: Dict[str, int] = {}

    @property
    def sync(self) -> WorkspaceSync:
        return self._sync

    @property
    def channel(self) -> CommandChannel:
        return self._channel

    @property
    def rebuilder(self) -> RebuildPipeline:
        return self._rebuilder

    # -------------------------------------------------------------------------
    # Naming and conversion
    # -------------------------------------------------------------------------

    def _next_stamp(self) -> int:
        stamp = int(time.time() * 1000)
        if stamp <= self._last_stamp:
            stamp = self._last_stamp + 1
        self._last_stamp = stamp
        return stamp

    def make_name(self, project_name: str) -> str:
        """Container name: prefix + project slug + creation timestamp (ms)."""
        return f"{self._settings.name_prefix}{safe_project_name(project_name)}-{self._next_stamp()}"

    def project_name_of(self, container_name: str) -> str:
        name = container_name.lstrip("/")
        if name.startswith(self._settings.name_prefix):
            name = name[len(self._settings.name_prefix):]
        return _TIMESTAMP_SUFFIX.sub("", name)

    def _to_sandbox(self, container: Container) -> Sandbox:
        attrs = container.attrs or {}
        name = container.name or attrs.get("Name", "").lstrip("/")
        state = self._states.get(container.id) or DOCKER_STATES.get(container.status, SandboxState.STOPPED)
        return Sandbox(
            id=container.id,
            name=name,
            project_name=self.project_name_of(name),
            state=state,
            port=port_from_attrs(attrs) or self._settings.default_port,
            working_root=self._settings.working_root,
            created_at=parse_created(attrs.get("Created")),
        )

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def _remove_stale(self, name: str) -> None:
        """Stop and remove a leftover container carrying this name."""
        try:
            stale = await run_blocking(self._client.containers.get, name)
        except NotFound:
            return
        logger.warning(f"Removing stale container {name} ({stale.id[:12]})")
        if stale.status == "running":
            await run_blocking(stale.stop, timeout=self._settings.stop_grace)
        await run_blocking(stale.remove)

    async def _discard_failed(self, container: Optional[Container], port: Optional[int]) -> None:
        """Undo a partially created sandbox. Cleanup errors are only logged."""
        if container is not None:
            try:
                await run_blocking(container.remove, force=True)
            except NotFound:
                pass
            except ENGINE_ERRORS as e:
                logger.error(f"Cleanup of failed sandbox {container.id[:12]} failed: {e}")
            self._states.pop(container.id, None)
            self._ports_by_id.pop(container.id, None)
            try:
                self._mirror.delete(container.id)
            except OSError as e:
                logger.error(f"Could not delete mirror of failed sandbox {container.id[:12]}: {e}")
        if port is not None:
            self._ports.release(port)

    async def create(self, project_name: str, progress: Optional[asyncio.Queue] = None) -> Sandbox:
        """
        Create and start a sandbox for a project.

        The project template is seeded, synced and built in a background
        task; poll logs()/port() to follow it.

        Args:
            project_name: Human readable project name
            progress: Optional queue receiving image pull progress events

        Returns:
            The running Sandbox

        Raises:
            EngineUnavailable: Docker cannot be reached
            ImageUnavailable: neither the base image nor its fallback is available
            EngineError: the container could not be created or started
        """
        await ping(self._client)
        image = await self._images.ensure(self._settings.base_image, self._settings.fallback_image, progress)

        container: Optional[Container] = None
        port: Optional[int] = None
        try:
            async with self._name_lock:
                name = self.make_name(project_name)
                await self._remove_stale(name)

                port = await self._ports.allocate()
                logger.info(f"Creating sandbox {name} on port {port} from {image}")
                container = await run_blocking(
                    self._client.containers.create,
                    image=image,
                    name=name,
                    command="bash",
                    tty=True,
                    working_dir=self._settings.working_root,
                    ports={f"{port}/tcp": port},
                    labels={SANDBOX_LABEL: "true", PROJECT_LABEL: project_name},
                )
            self._ports_by_id[container.id] = port
            self._states[container.id] = SandboxState.CREATING

            await run_blocking(container.start)
            await run_blocking(container.reload)
            self._mirror.create(container.id)
        except SandboxError:
            await self._discard_failed(container, port)
            raise
        except ENGINE_ERRORS as e:
            await self._discard_failed(container, port)
            raise translate_error(e, f"create of {project_name!r}", container.id if container else None) from e
        except OSError as e:
            await self._discard_failed(container, port)
            raise EngineError(f"Could not prepare sandbox for {project_name!r}", detail=str(e)) from e

        self._states.pop(container.id, None)
        sandbox = self._to_sandbox(container)
        logger.info(f"Sandbox {sandbox.name} running ({sandbox.id[:12]}), port {port}")

        task = asyncio.create_task(self.initialize(container.id, port))
        task.add_done_callback(partial(self._init_done, container.id))
        self._init_tasks[container.id] = task
        return sandbox

    async def initialize(self, sandbox_id: str, port: int) -> bool:
        """
        Seed the template project, push it and run the first rebuild.

        Runs detached from create(); failures are logged, not raised.

        Returns:
            True if the project was initialized
        """
        try:
            logger.info(f"Initializing project in {sandbox_id[:12]}")
            for path, content in render_template(port).items():
                self._mirror.write(sandbox_id, path, content)
            await self._sync.push(sandbox_id)
            await self._rebuilder.rebuild(sandbox_id, port)
        except (SandboxError, OSError) as e:
            logger.error(f"Project initialization in {sandbox_id[:12]} failed: {e}")
            return False
        logger.info(f"Project in {sandbox_id[:12]} initialized")
        return True

    def _init_done(self, sandbox_id: str, task: asyncio.Task) -> None:
        if self._init_tasks.get(sandbox_id) is task:
            del self._init_tasks[sandbox_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Initialization task of {sandbox_id[:12]} crashed: {error!r}")
            self._init_results[sandbox_id] = False
        else:
            self._init_results[sandbox_id] = task.result()

    async def wait_initialized(self, sandbox_id: str) -> bool:
        """
        Wait for the background initialization of a sandbox.

        Returns:
            The initialization outcome; False if none was ever scheduled
        """
        task = self._init_tasks.get(sandbox_id)
        if task is not None:
            # Does not cancel the task if the waiter is cancelled
            await asyncio.wait({task})
        return self._init_results.get(sandbox_id, False)

    # -------------------------------------------------------------------------
    # Start / stop / remove
    # -------------------------------------------------------------------------

    async def start(self, sandbox_id: str) -> None:
        """Start a sandbox. Already running sandboxes are left alone."""
        container = await get_container(self._client, sandbox_id)
        try:
            if container.status == "running":
                logger.info(f"Sandbox {sandbox_id[:12]} already running")
                return
            if container.status == "paused":
                await run_blocking(container.unpause)
            else:
                await run_blocking(container.start)
        except ENGINE_ERRORS as e:
            raise translate_error(e, "start", sandbox_id) from e
        logger.info(f"Started sandbox {sandbox_id[:12]}")

    async def stop(self, sandbox_id: str) -> None:
        """Stop a sandbox. Already stopped sandboxes are left alone."""
        container = await get_container(self._client, sandbox_id)
        if container.status not in ("running", "restarting", "paused"):
            logger.info(f"Sandbox {sandbox_id[:12]} already stopped")
            return
        try:
            await run_blocking(container.stop, timeout=self._settings.stop_grace)
        except ENGINE_ERRORS as e:
            raise translate_error(e, "stop", sandbox_id) from e
        logger.info(f"Stopped sandbox {sandbox_id[:12]}")

    async def _stop_and_remove(self, sandbox_id: str, info: dict) -> None:
        api = self._client.api
        if (info.get("State") or {}).get("Running"):
            logger.info(f"Stopping sandbox {sandbox_id[:12]} before removal")
            await run_blocking(api.stop, sandbox_id, timeout=self._settings.stop_grace)
        await run_blocking(api.remove_container, sandbox_id)

    async def remove(self, sandbox_id: str) -> None:
        """
        Stop (with grace period) and remove a sandbox, then delete its mirror.

        A failed removal is retried once with force before EngineError is
        raised. A sandbox that no longer exists counts as removed.
        """
        self._states[sandbox_id] = SandboxState.REMOVING
        port = self._ports_by_id.pop(sandbox_id, None)
        try:
            info = await run_blocking(self._client.api.inspect_container, sandbox_id)
            port = port or port_from_attrs(info)
            await self._stop_and_remove(sandbox_id, info)
        except NotFound:
            logger.info(f"Sandbox {sandbox_id[:12]} already gone from the engine")
        except ENGINE_ERRORS as e:
            logger.error(f"Error removing sandbox {sandbox_id[:12]}: {e}. Retrying with force")
            try:
                await run_blocking(self._client.api.remove_container, sandbox_id, force=True)
            except NotFound:
                pass
            except ENGINE_ERRORS as force_error:
                self._states.pop(sandbox_id, None)
                if port is not None:
                    self._ports_by_id[sandbox_id] = port
                raise translate_error(force_error, "forced remove", sandbox_id) from force_error
            logger.info(f"Sandbox {sandbox_id[:12]} removed (forced)")

        task = self._init_tasks.pop(sandbox_id, None)
        if task is not None and not task.done():
            task.cancel()
        self._init_results.pop(sandbox_id, None)

        self._mirror.delete(sandbox_id)
        if port is not None:
            self._ports.release(port)
        self._states[sandbox_id] = SandboxState.REMOVED
        logger.info(f"Removed sandbox {sandbox_id[:12]}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get(self, sandbox_id: str) -> Sandbox:
        container = await get_container(self._client, sandbox_id)
        return self._to_sandbox(container)

    async def list(self) -> List[Sandbox]:
        """All sandboxes carrying the naming prefix, in any state."""
        prefix = self._settings.name_prefix
        try:
            containers = await run_blocking(
                self._client.containers.list,
                all=True,
                filters={"name": prefix},
            )
        except ENGINE_ERRORS as e:
            raise translate_error(e, "list") from e

        return [
            self._to_sandbox(c)
            for c in containers
            if (c.name or "").lstrip("/").startswith(prefix)
        ]

    async def logs(self, sandbox_id: str, tail: int = 50) -> str:
        """Last `tail` lines of combined stdout/stderr."""
        container = await get_container(self._client, sandbox_id)
        try:
            raw = await run_blocking(container.logs, stdout=True, stderr=True, tail=tail)
        except ENGINE_ERRORS as e:
            raise translate_error(e, "logs", sandbox_id) from e
        return raw.decode("utf-8", errors="replace")

    async def follow_logs(
        self,
        sandbox_id: str,
        interval: Optional[float] = None,
        tail: int = 50,
    ) -> AsyncIterator[str]:
        """
        Poll the log tail at a fixed interval, yielding it whenever it changes.

        The generator runs until the caller stops iterating or the sandbox
        disappears (EngineError).
        """
        interval = interval if interval is not None else self._settings.log_poll_interval
        last: Optional[str] = None
        while True:
            text = await self.logs(sandbox_id, tail)
            if text != last:
                last = text
                yield text
            await asyncio.sleep(interval)

    async def port(self, sandbox_id: str) -> int:
        """
        Host port currently bound for the sandbox.

        Falls back to the configured default when no binding is found or the
        engine cannot be asked.
        """
        try:
            container = await get_container(self._client, sandbox_id)
        except SandboxError as e:
            logger.error(f"Could not resolve port of {sandbox_id[:12]}: {e}")
            return self._settings.default_port
        port = port_from_attrs(container.attrs or {})
        if port is None:
            logger.debug(f"No port binding for {sandbox_id[:12]}, using default")
            return self._settings.default_port
        return port
