"""
Workspace Mirror - The local authoritative copy of each sandbox's files.

Each sandbox gets a directory named after its container id under the
configured workdir base. All edits land here first; the copy inside the
container is a replica that is refreshed by the synchronization protocol.
"""

import logging
import os
import shutil
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import List, Union

from aidev.errors import MirrorMissing, PathInvalid

logger = logging.getLogger(__name__)


class WorkspaceMirror:
    """
    Owns the on-disk mirror for every sandbox.

    Operations here never talk to Docker; they only touch the local
    filesystem below base_dir.
    """

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, sandbox_id: str) -> Path:
        """Mirror root for a sandbox."""
        if not sandbox_id or "/" in sandbox_id or "\\" in sandbox_id or sandbox_id in (".", ".."):
            raise PathInvalid(sandbox_id, detail="sandbox id is not a valid directory name")
        return self.base_dir / sandbox_id

    def exists(self, sandbox_id: str) -> bool:
        return self.path_for(sandbox_id).is_dir()

    def create(self, sandbox_id: str) -> Path:
        """Create the mirror root if it does not exist yet."""
        root = self.path_for(sandbox_id)
        root.mkdir(parents=True, exist_ok=True)
        return root

    def resolve(self, sandbox_id: str, relative_path: str) -> Path:
        """
        Map a relative workspace path onto the mirror.

        Raises:
            PathInvalid: if the path is empty, absolute or escapes the root
        """
        if not relative_path or not relative_path.strip():
            raise PathInvalid(relative_path, sandbox_id, "path is empty")

        normalised = relative_path.replace("\\", "/")
        posix = PurePosixPath(normalised)
        if posix.is_absolute() or PureWindowsPath(relative_path).drive:
            raise PathInvalid(relative_path, sandbox_id, "path must be relative")
        if ".." in posix.parts:
            raise PathInvalid(relative_path, sandbox_id, "path must not contain '..'")

        root = self.path_for(sandbox_id).resolve()
        target = (root / posix).resolve()
        if target == root or not target.is_relative_to(root):
            raise PathInvalid(relative_path, sandbox_id, "path escapes the workspace root")
        return target

    def write(self, sandbox_id: str, relative_path: str, content: Union[str, bytes]) -> Path:
        """
        Write a file into the mirror, creating parent directories.

        Existing files are overwritten. Text is stored as UTF-8.

        Raises:
            MirrorMissing: if the sandbox has no mirror; writes never create one
        """
        if not self.exists(sandbox_id):
            raise MirrorMissing("No workspace mirror", sandbox_id)
        target = self.resolve(sandbox_id, relative_path)
        data = content.encode("utf-8") if isinstance(content, str) else content

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug(f"Wrote {relative_path} ({len(data)} bytes) to mirror {sandbox_id[:12]}")
        return target

    def read(self, sandbox_id: str, relative_path: str) -> bytes:
        """Read a file from the mirror."""
        if not self.exists(sandbox_id):
            raise MirrorMissing("No workspace mirror", sandbox_id)
        target = self.resolve(sandbox_id, relative_path)
        if not target.is_file():
            raise PathInvalid(relative_path, sandbox_id, "file does not exist")
        return target.read_bytes()

    def remove_file(self, sandbox_id: str, relative_path: str) -> bool:
        """
        Delete a file or directory from the mirror.

        Returns:
            False if there was nothing at the path
        """
        if not self.exists(sandbox_id):
            raise MirrorMissing("No workspace mirror", sandbox_id)
        target = self.resolve(sandbox_id, relative_path)
        if target.is_dir():
            shutil.rmtree(target)
        elif target.exists():
            target.unlink()
        else:
            return False
        logger.debug(f"Removed {relative_path} from mirror {sandbox_id[:12]}")
        return True

    def read_all(self, sandbox_id: str) -> List[str]:
        """
        List every directory and file in the mirror.

        Returns:
            Relative POSIX paths, all directories first then all files,
            each group sorted alphabetically. Empty if there is no mirror.
        """
        if not self.exists(sandbox_id):
            return []

        root = self.path_for(sandbox_id)
        directories: List[str] = []
        files: List[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            current = Path(dirpath)
            for name in dirnames:
                directories.append((current / name).relative_to(root).as_posix())
            for name in filenames:
                files.append((current / name).relative_to(root).as_posix())

        return sorted(directories) + sorted(files)

    def delete(self, sandbox_id: str) -> None:
        """Remove the whole mirror. Safe to call when it is already gone."""
        root = self.path_for(sandbox_id)
        if root.exists():
            shutil.rmtree(root)
            logger.info(f"Deleted workspace mirror {root}")
