"""
Request/response API over the sandbox engine.

Every operation is async and returns a plain dict with "success" set.
Failures never raise out of this layer: they come back as
{"success": False, "error": ..., "error_type": ...} so the UI can render
every call the same way.
"""

import functools
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional, Type

import docker

from aidev.config import Config, get_config
from aidev.errors import SandboxError
from aidev.schemas import (
    ApiResponse,
    CommandResponse,
    CreateProjectResponse,
    FileContentResponse,
    FilesResponse,
    ListSandboxesResponse,
    LogsResponse,
    PortResponse,
)
from aidev.sandbox.engine import connect
from aidev.sandbox.ports import PortAllocator
from aidev.sandbox.registry import SandboxController
from aidev.sandbox.workspace import WorkspaceMirror
from aidev.utils import shell_quote

logger = logging.getLogger(__name__)


def api_call(response_cls: Type[ApiResponse] = ApiResponse) -> Callable:
    """Wrap an API coroutine into the uniform success/error envelope."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs) -> Dict[str, Any]:
            try:
                payload = await func(self, *args, **kwargs) or {}
            except SandboxError as e:
                logger.error(f"{func.__name__} failed: {e}")
                response = response_cls(success=False, error=str(e), error_type=e.error_type)
            except Exception as e:
                logger.exception(f"Unexpected error in {func.__name__}")
                response = response_cls(
                    success=False,
                    error=str(e) or type(e).__name__,
                    error_type="InternalError",
                )
            else:
                response = response_cls(success=True, **payload)
            return response.model_dump(exclude_none=True)

        return wrapper

    return decorator


class SandboxAPI:
    """The operations exposed to the UI layer."""

    def __init__(self, controller: SandboxController, mirror: WorkspaceMirror, client: Optional[docker.DockerClient] = None):
        self.controller = controller
        self.mirror = mirror
        self._client = client

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "SandboxAPI":
        """
        Wire the engine from configuration.

        Raises:
            EngineUnavailable: if Docker is not running
        """
        config = config or get_config()
        settings = config.settings()
        client = connect()
        mirror = WorkspaceMirror(settings.workdir_base)
        controller = SandboxController(client, mirror, PortAllocator(), settings)
        return cls(controller, mirror, client)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @api_call(CreateProjectResponse)
    async def create_project(self, name: str, wait: bool = False):
        """
        Create a project sandbox.

        By default this returns once the container runs and the template is
        still being built in the background. With wait=True it also waits
        for that build and reports its outcome as "initialized".
        """
        sandbox = await self.controller.create(name)
        payload = {"id": sandbox.id, "port": sandbox.port}
        if wait:
            payload["initialized"] = await self.controller.wait_initialized(sandbox.id)
        return payload

    @api_call()
    async def start_sandbox(self, sandbox_id: str):
        await self.controller.start(sandbox_id)

    @api_call()
    async def stop_sandbox(self, sandbox_id: str):
        await self.controller.stop(sandbox_id)

    @api_call()
    async def remove_sandbox(self, sandbox_id: str):
        await self.controller.remove(sandbox_id)

    @api_call(ListSandboxesResponse)
    async def list_sandboxes(self):
        sandboxes = await self.controller.list()
        return {"sandboxes": [s.summary() for s in sandboxes]}

    # -------------------------------------------------------------------------
    # Files and commands
    # -------------------------------------------------------------------------

    @api_call()
    async def write_file(self, sandbox_id: str, path: str, content: str):
        await self.controller.sync.write_and_push(sandbox_id, path, content)

    @api_call()
    async def delete_file(self, sandbox_id: str, path: str):
        """Delete a file or directory from the mirror and from the live sandbox."""
        target = self.mirror.resolve(sandbox_id, path)
        workspace_path = target.relative_to(self.mirror.path_for(sandbox_id).resolve()).as_posix()
        self.mirror.remove_file(sandbox_id, workspace_path)
        await self.controller.channel.run_short(sandbox_id, f"rm -rf -- {shell_quote(workspace_path)}")

    @api_call(FilesResponse)
    async def fetch_file(self, sandbox_id: str, path: str):
        """Copy a file or directory generated inside the sandbox into the mirror."""
        return {"files": await self.controller.sync.fetch(sandbox_id, path)}

    @api_call(CommandResponse)
    async def run_command(self, sandbox_id: str, command: str):
        output = await self.controller.channel.run(sandbox_id, command)
        return {"output": output}

    @api_call(FilesResponse)
    async def list_files(self, sandbox_id: str):
        return {"files": self.mirror.read_all(sandbox_id)}

    @api_call(FileContentResponse)
    async def read_file(self, sandbox_id: str, path: str):
        content = self.mirror.read(sandbox_id, path)
        return {"content": content.decode("utf-8", errors="replace")}

    @api_call(FilesResponse)
    async def list_remote_files(self, sandbox_id: str):
        return {"files": await self.controller.channel.list_files(sandbox_id)}

    @api_call(FileContentResponse)
    async def read_remote_file(self, sandbox_id: str, path: str):
        return {"content": await self.controller.channel.read_file(sandbox_id, path)}

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    @api_call(LogsResponse)
    async def get_logs(self, sandbox_id: str, tail_lines: int = 50):
        return {"text": await self.controller.logs(sandbox_id, tail_lines)}

    @api_call(PortResponse)
    async def get_port(self, sandbox_id: str):
        return {"port": await self.controller.port(sandbox_id)}

    @api_call()
    async def rebuild(self, sandbox_id: str, port: int):
        await self.controller.rebuilder.rebuild(sandbox_id, port)

    async def follow_logs(
        self,
        sandbox_id: str,
        tail_lines: int = 50,
        interval: Optional[float] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream the log tail as LogsResponse dicts, one per change.

        An engine failure ends the stream with a single error response.
        """
        try:
            async for text in self.controller.follow_logs(sandbox_id, interval, tail_lines):
                yield LogsResponse(success=True, text=text).model_dump(exclude_none=True)
        except SandboxError as e:
            logger.error(f"follow_logs failed: {e}")
            yield LogsResponse(success=False, error=str(e), error_type=e.error_type).model_dump(exclude_none=True)
