"""
Error taxonomy for the sandbox engine.

Every error raised by the engine derives from SandboxError and carries the
sandbox it concerns plus a short detail string, so the API layer can turn
it into a uniform error response.
"""

from typing import Optional


class SandboxError(Exception):
    """Base class for all sandbox engine failures."""

    def __init__(self, message: str, sandbox_id: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.sandbox_id = sandbox_id
        self.detail = detail

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        message = super().__str__()
        if self.sandbox_id:
            message = f"[{self.sandbox_id[:12]}] {message}"
        if self.detail:
            message = f"{message}: {self.detail}"
        return message


class EngineUnavailable(SandboxError):
    """The Docker control API cannot be reached."""


class ImageUnavailable(SandboxError):
    """Neither the base image nor its fallback could be pulled."""


class PathInvalid(SandboxError):
    """A workspace path is empty, absolute or escapes the mirror root."""

    def __init__(self, path: str, sandbox_id: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(f"Invalid workspace path {path!r}", sandbox_id, detail)
        self.path = path


class MirrorMissing(SandboxError):
    """No local workspace mirror exists for the sandbox."""


class TransferFailed(SandboxError):
    """The archive could not be unpacked inside the sandbox. Resync needed."""


class ExecutionTimeout(SandboxError):
    """A command did not finish within its timeout."""

    def __init__(self, command: str, timeout: float, sandbox_id: Optional[str] = None):
        super().__init__(f"Command timed out after {timeout:g}s", sandbox_id, command)
        self.command = command
        self.timeout = timeout


class EngineError(SandboxError):
    """A lifecycle or exec call was rejected by the engine."""


class RebuildFailed(SandboxError):
    """One step of the rebuild pipeline failed."""

    def __init__(self, step: str, sandbox_id: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(
            f"Rebuild failed at step '{step}'",
            sandbox_id,
            str(cause) if cause else None,
        )
        self.step = step
        self.cause = cause
