"""
Image Puller - Make sure the sandbox base image is present locally.

A pull streams JSON progress events from the daemon. We expose them on an
optional asyncio.Queue so callers can render progress, while the pull
itself is a single awaitable that resolves or fails exactly once.
"""

import asyncio
import logging
from typing import Optional

import docker
from docker.errors import ImageNotFound

from aidev.errors import ImageUnavailable
from aidev.sandbox.engine import ENGINE_ERRORS, is_connection_error, run_blocking, translate_error

logger = logging.getLogger(__name__)


def _split_tag(image: str):
    """Split 'repo:tag' into (repo, tag), defaulting tag to latest."""
    name, _, tag = image.rpartition(":")
    if not name or "/" in tag:
        return image, "latest"
    return name, tag


class ImagePuller:
    """Checks for, and pulls, sandbox base images."""

    def __init__(self, client: docker.DockerClient):
        self._client = client

    async def exists(self, image: str) -> bool:
        """Check whether image is present locally."""
        try:
            await run_blocking(self._client.images.get, image)
            return True
        except ImageNotFound:
            return False
        except ENGINE_ERRORS as e:
            raise translate_error(e, f"image inspect {image}") from e

    def _stream_pull(self, image: str, loop: asyncio.AbstractEventLoop, progress: Optional[asyncio.Queue]) -> None:
        repository, tag = _split_tag(image)
        for event in self._client.api.pull(repository, tag=tag, stream=True, decode=True):
            if progress is not None:
                loop.call_soon_threadsafe(progress.put_nowait, event)
            if "error" in event:
                raise ImageUnavailable(f"Pull of {image} failed", detail=event.get("error"))
            status = event.get("status")
            if status:
                logger.debug(f"{image}: {status} {event.get('progress', '')}")

    async def pull(self, image: str, progress: Optional[asyncio.Queue] = None) -> None:
        """
        Pull image, forwarding progress events to the queue if given.

        Raises:
            ImageUnavailable: if the pull fails for any reason other than
                the daemon being unreachable
            EngineUnavailable: if the daemon cannot be reached
        """
        logger.info(f"Pulling image {image}...")
        loop = asyncio.get_running_loop()
        try:
            await run_blocking(self._stream_pull, image, loop, progress)
        except ImageUnavailable:
            raise
        except ENGINE_ERRORS as e:
            if is_connection_error(e):
                raise translate_error(e, f"pull {image}") from e
            raise ImageUnavailable(f"Pull of {image} failed", detail=str(e)) from e
        logger.info(f"Image {image} pulled successfully")

    async def ensure(self, image: str, fallback: Optional[str] = None, progress: Optional[asyncio.Queue] = None) -> str:
        """
        Make image available locally, trying fallback once if the pull fails.

        Returns:
            The tag that is now available

        Raises:
            ImageUnavailable: if neither image could be pulled
        """
        if await self.exists(image):
            logger.debug(f"Image {image} found locally")
            return image

        try:
            await self.pull(image, progress)
            return image
        except ImageUnavailable as e:
            if not fallback:
                raise
            logger.error(f"Failed to pull {image}: {e}. Trying fallback {fallback}")

        if await self.exists(fallback):
            return fallback
        try:
            await self.pull(fallback, progress)
        except ImageUnavailable as e:
            raise ImageUnavailable(
                f"Could not pull {image} or {fallback}",
                detail=e.detail,
            ) from e
        return fallback
