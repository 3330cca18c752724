"""
Pydantic schemas for sandboxes and API responses.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class SandboxState(str, Enum):
    """Lifecycle state of a sandbox."""
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVING = "removing"
    REMOVED = "removed"


# Docker container status -> sandbox state
DOCKER_STATES = {
    "created": SandboxState.CREATING,
    "restarting": SandboxState.RUNNING,
    "running": SandboxState.RUNNING,
    "paused": SandboxState.STOPPED,
    "exited": SandboxState.STOPPED,
    "dead": SandboxState.STOPPED,
    "removing": SandboxState.REMOVING,
}


class Sandbox(BaseModel):
    """An isolated execution environment for one project."""
    id: str = Field(..., description="Container id assigned by the engine")
    name: str = Field(..., description="Container name: prefix + project + creation timestamp")
    project_name: str = Field(..., description="Project name recovered from the container name")
    state: SandboxState = Field(..., description="Current lifecycle state")
    port: int = Field(..., description="Host port exposed for the dev server")
    working_root: str = Field("/app", description="Application root inside the sandbox")
    created_at: Optional[datetime] = Field(None, description="Creation time reported by the engine")

    def summary(self) -> dict:
        """Flat dict used by list_sandboxes."""
        return {
            "id": self.id,
            "name": self.name,
            "project_name": self.project_name,
            "state": self.state.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "port": self.port,
        }


class ApiResponse(BaseModel):
    """Uniform response envelope returned by every API call."""
    success: bool
    error: Optional[str] = None
    error_type: Optional[str] = None


class CreateProjectResponse(ApiResponse):
    id: Optional[str] = None
    port: Optional[int] = None
    initialized: Optional[bool] = None


class ListSandboxesResponse(ApiResponse):
    sandboxes: List[dict] = Field(default_factory=list)


class CommandResponse(ApiResponse):
    output: Optional[str] = None


class FilesResponse(ApiResponse):
    files: List[str] = Field(default_factory=list)


class FileContentResponse(ApiResponse):
    content: Optional[str] = None


class LogsResponse(ApiResponse):
    text: Optional[str] = None


class PortResponse(ApiResponse):
    port: Optional[int] = None
