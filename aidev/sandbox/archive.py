"""
Archive Codec - Serialize a workspace tree into a tar stream and back.

Entries are written in a deterministic order: every directory comes before
its contents and siblings are sorted by name. Owner fields are normalised so
the same tree always yields the same member list regardless of who owns the
files on the host.
"""

import os
import tarfile
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterator, List, Optional, Tuple, Union

from aidev.errors import PathInvalid


def iter_tree(root: Union[str, Path]) -> Iterator[Tuple[Path, str]]:
    """
    Walk a directory tree in archive order.

    Yields:
        (absolute path, relative POSIX arcname) pairs
    """
    root = Path(root)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        current = Path(dirpath)
        if current != root:
            yield current, current.relative_to(root).as_posix()
        for name in sorted(filenames):
            full = current / name
            yield full, full.relative_to(root).as_posix()


def _normalise(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def pack(root: Union[str, Path], fileobj: BinaryIO, compress: bool = False) -> int:
    """
    Write the tree under root into fileobj as a tar stream.

    Args:
        root: Directory to serialize
        fileobj: Writable binary file object
        compress: Use gzip compression

    Returns:
        Number of members written
    """
    mode = "w:gz" if compress else "w"
    count = 0
    with tarfile.open(fileobj=fileobj, mode=mode, format=tarfile.PAX_FORMAT) as tar:
        for full, arcname in iter_tree(root):
            tar.add(str(full), arcname=arcname, recursive=False, filter=_normalise)
            count += 1
    return count


def _check_member(member: tarfile.TarInfo, dest: Path) -> None:
    name = member.name
    posix = PurePosixPath(name)
    if posix.is_absolute() or ".." in posix.parts:
        raise PathInvalid(name, detail="archive member escapes destination")
    target = (dest / name).resolve()
    if not target.is_relative_to(dest):
        raise PathInvalid(name, detail="archive member escapes destination")
    if member.issym() or member.islnk():
        link = PurePosixPath(member.linkname)
        base = target.parent if member.issym() else dest
        if link.is_absolute() or not (base / member.linkname).resolve().is_relative_to(dest):
            raise PathInvalid(name, detail="archive link points outside destination")


def unpack(fileobj: BinaryIO, dest: Union[str, Path], only: Optional[str] = None) -> List[str]:
    """
    Extract a tar stream (plain or gzip) into dest.

    Args:
        fileobj: Readable binary file object
        dest: Directory to extract into, created if needed
        only: If given, every member must be this name or sit below it

    Raises:
        PathInvalid: if any member would land outside dest or outside `only`

    Returns:
        Member names in archive order
    """
    dest = Path(dest).resolve()
    with tarfile.open(fileobj=fileobj, mode="r:*") as tar:
        members = tar.getmembers()
        # Validate everything before touching the filesystem
        for member in members:
            _check_member(member, dest)
            if only is not None and member.name != only and not member.name.startswith(only + "/"):
                raise PathInvalid(member.name, detail=f"archive member is not part of {only!r}")
        dest.mkdir(parents=True, exist_ok=True)
        for member in members:
            tar.extract(member, path=str(dest), set_attrs=False)
        return [m.name for m in members]
