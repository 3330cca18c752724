"""
Docker engine access shared by the sandbox components.

The Docker SDK is synchronous, so every call is pushed onto the event
loop's default executor. Errors coming back from the SDK are translated
into the engine's error taxonomy with the failing operation as context.
"""

import asyncio
import functools
import logging
import socket
from typing import Any, Callable, Optional

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.models.containers import Container

from aidev.errors import EngineError, EngineUnavailable

logger = logging.getLogger(__name__)

# Exceptions the SDK raises for daemon, transport and API failures
ENGINE_ERRORS = (DockerException, requests.exceptions.RequestException, ConnectionError)


async def run_blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a blocking SDK call without stalling the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def is_connection_error(exc: BaseException) -> bool:
    """True if exc means the Docker daemon could not be reached at all."""
    if isinstance(exc, (requests.exceptions.ConnectionError, ConnectionError, FileNotFoundError)):
        return True
    if isinstance(exc, DockerException) and not isinstance(exc, APIError):
        message = str(exc).lower()
        return (
            "connection" in message
            or "error while fetching server api version" in message
            or "docker daemon" in message
        )
    return False


def translate_error(
    exc: BaseException,
    operation: str,
    sandbox_id: Optional[str] = None,
) -> Exception:
    """Wrap an SDK exception with the operation that failed."""
    if is_connection_error(exc):
        return EngineUnavailable(f"Docker engine unreachable during {operation}", sandbox_id, str(exc))
    if isinstance(exc, NotFound):
        return EngineError(f"Sandbox not found during {operation}", sandbox_id, str(exc))
    return EngineError(f"Docker {operation} failed", sandbox_id, str(exc))


def connect() -> docker.DockerClient:
    """
    Build a Docker client from the environment (DOCKER_HOST etc.) and
    check the daemon answers.

    Raises:
        EngineUnavailable: if the daemon cannot be reached
    """
    try:
        client = docker.from_env()
        client.ping()
    except (DockerException, requests.exceptions.RequestException) as e:
        raise EngineUnavailable("Docker is not running", detail=str(e)) from e
    return client


async def ping(client: docker.DockerClient) -> None:
    """Raise EngineUnavailable if the daemon behind client does not answer."""
    try:
        await run_blocking(client.ping)
    except ENGINE_ERRORS as e:
        raise EngineUnavailable("Docker is not running", detail=str(e)) from e


async def get_container(client: docker.DockerClient, sandbox_id: str) -> Container:
    """Look up a container by id, translating SDK errors."""
    try:
        return await run_blocking(client.containers.get, sandbox_id)
    except ENGINE_ERRORS as e:
        raise translate_error(e, "inspect", sandbox_id) from e


def interrupt_stream(stream: Any) -> None:
    """
    Wake up a thread blocked reading a hijacked exec stream.

    Only shuts the connection down; the reading thread closes it once it
    returns.
    """
    raw = getattr(stream, "_sock", stream)
    try:
        raw.shutdown(socket.SHUT_RDWR)
    except (OSError, AttributeError) as e:
        logger.debug(f"Exec stream already shut down: {e}")


def close_stream(stream: Any) -> None:
    """Close a hijacked exec stream and the HTTP response that owns it."""
    try:
        stream.close()
    except OSError as e:
        logger.debug(f"Error closing exec stream: {e}")
    response = getattr(stream, "_response", None)
    if response is not None:
        response.close()
