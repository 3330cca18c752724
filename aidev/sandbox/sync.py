"""
Synchronization Protocol - Push a workspace mirror into its sandbox, and
fetch files back out of it.

The mirror is packed into a temporary tar file next to it, streamed to the
container's archive endpoint to be unpacked over the working root, and the
temporary file is removed whatever happens. A failed or partial unpack is
reported as TransferFailed so the caller knows a resync is needed.
"""

import logging
import tarfile
from pathlib import Path, PurePosixPath
from typing import List, Union

import docker
from docker.errors import NotFound

from aidev.config import SandboxSettings
from aidev.errors import MirrorMissing, PathInvalid, SandboxError, TransferFailed
from aidev.sandbox import archive
from aidev.sandbox.engine import ENGINE_ERRORS, get_container, run_blocking
from aidev.sandbox.workspace import WorkspaceMirror

logger = logging.getLogger(__name__)


class WorkspaceSync:
    """Transfers mirror contents into running sandboxes."""

    def __init__(self, client: docker.DockerClient, mirror: WorkspaceMirror, settings: SandboxSettings):
        self._client = client
        self._mirror = mirror
        self._settings = settings

    def _archive_path(self, sandbox_id: str) -> Path:
        suffix = ".tar.gz" if self._settings.compress_archive else ".tar"
        return self._mirror.base_dir / f"{sandbox_id}_sync{suffix}"

    def _put(self, container, archive_path: Path) -> bool:
        with open(archive_path, "rb") as stream:
            return container.put_archive(self._settings.working_root, stream)

    async def push(self, sandbox_id: str) -> int:
        """
        Replace files under the sandbox working root with the mirror contents.

        Returns:
            Number of archive members transferred

        Raises:
            MirrorMissing: if the sandbox has no local mirror
            TransferFailed: if the engine rejected or interrupted the unpack
        """
        if not self._mirror.exists(sandbox_id):
            raise MirrorMissing("No workspace mirror to push", sandbox_id)

        root = self._mirror.path_for(sandbox_id)
        archive_path = self._archive_path(sandbox_id)

        try:
            with open(archive_path, "wb") as f:
                count = await run_blocking(archive.pack, root, f, self._settings.compress_archive)

            container = await get_container(self._client, sandbox_id)
            try:
                accepted = await run_blocking(self._put, container, archive_path)
            except ENGINE_ERRORS as e:
                raise TransferFailed("Archive upload failed", sandbox_id, str(e)) from e
            if not accepted:
                raise TransferFailed("Engine rejected the archive", sandbox_id)

        except SandboxError as e:
            logger.error(f"Sync of {sandbox_id[:12]} failed: {e}")
            raise
        except OSError as e:
            logger.error(f"Sync of {sandbox_id[:12]} failed while packing: {e}")
            raise TransferFailed("Could not pack workspace", sandbox_id, str(e)) from e
        finally:
            if archive_path.exists():
                try:
                    archive_path.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove temporary archive {archive_path}: {e}")

        logger.info(f"Synced {count} entries into {sandbox_id[:12]}:{self._settings.working_root}")
        return count

    async def write_and_push(self, sandbox_id: str, relative_path: str, content: Union[str, bytes]) -> None:
        """Write one file into the mirror and push the mirror."""
        self._mirror.write(sandbox_id, relative_path, content)
        await self.push(sandbox_id)

    def _get(self, container, source: str, archive_path: Path) -> None:
        chunks, _ = container.get_archive(source)
        with open(archive_path, "wb") as f:
            for chunk in chunks:
                f.write(chunk)

    async def fetch(self, sandbox_id: str, relative_path: str) -> List[str]:
        """
        Copy a file or directory from the sandbox back into the mirror.

        Used to pick up files generated inside the container (lock files,
        scaffolded sources). Existing mirror files at the path are overwritten.

        Returns:
            Workspace paths written to the mirror

        Raises:
            MirrorMissing: if the sandbox has no local mirror
            PathInvalid: if the path is invalid or absent in the sandbox
            TransferFailed: if the archive could not be downloaded or unpacked
        """
        if not self._mirror.exists(sandbox_id):
            raise MirrorMissing("No workspace mirror to fetch into", sandbox_id)

        target = self._mirror.resolve(sandbox_id, relative_path)
        root = self._mirror.path_for(sandbox_id).resolve()
        workspace_path = target.relative_to(root).as_posix()
        source = f"{self._settings.working_root.rstrip('/')}/{workspace_path}"
        archive_path = self._mirror.base_dir / f"{sandbox_id}_fetch.tar"

        container = await get_container(self._client, sandbox_id)
        try:
            try:
                await run_blocking(self._get, container, source, archive_path)
            except NotFound as e:
                raise PathInvalid(relative_path, sandbox_id, "file does not exist in sandbox") from e
            except ENGINE_ERRORS as e:
                raise TransferFailed("Archive download failed", sandbox_id, str(e)) from e

            with open(archive_path, "rb") as f:
                names = await run_blocking(archive.unpack, f, target.parent, target.name)
        except (OSError, tarfile.TarError) as e:
            logger.error(f"Fetch of {workspace_path} from {sandbox_id[:12]} failed: {e}")
            raise TransferFailed("Could not unpack archive from sandbox", sandbox_id, str(e)) from e
        finally:
            if archive_path.exists():
                try:
                    archive_path.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove temporary archive {archive_path}: {e}")

        parent = PurePosixPath(workspace_path).parent
        written = [(parent / name).as_posix() for name in names]
        logger.info(f"Fetched {len(written)} entries from {sandbox_id[:12]}:{source}")
        return written
