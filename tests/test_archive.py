import io
import tarfile

import pytest

from aidev.errors import PathInvalid
from aidev.sandbox import archive


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "tree"
    (root / "src" / "components").mkdir(parents=True)
    (root / "package.json").write_text('{"name": "demo"}')
    (root / "index.html").write_text("<html></html>")
    (root / "src" / "main.tsx").write_text("main")
    (root / "src" / "components" / "Button.tsx").write_text("button")
    return root


def packed(root, compress=False):
    buffer = io.BytesIO()
    archive.pack(root, buffer, compress=compress)
    buffer.seek(0)
    return buffer


def member_names(root):
    with tarfile.open(fileobj=packed(root)) as tar:
        return tar.getnames()


def test_members_in_deterministic_order(tree):
    names = member_names(tree)
    assert names == [
        "index.html",
        "package.json",
        "src",
        "src/main.tsx",
        "src/components",
        "src/components/Button.tsx",
    ]
    assert member_names(tree) == names


def test_directory_precedes_its_contents(tree):
    names = member_names(tree)
    for name in names:
        if "/" in name:
            parent = name.rsplit("/", 1)[0]
            assert names.index(parent) < names.index(name)


def test_owner_fields_are_normalised(tree):
    with tarfile.open(fileobj=packed(tree)) as tar:
        for member in tar.getmembers():
            assert (member.uid, member.gid, member.uname) == (0, 0, "root")


def test_pack_reports_member_count(tree, tmp_path):
    with open(tmp_path / "t.tar", "wb") as f:
        assert archive.pack(tree, f) == 6


def test_gzip_archive_unpacks(tree, tmp_path):
    data = packed(tree, compress=True)
    assert data.getvalue()[:2] == b"\x1f\x8b"

    dest = tmp_path / "out"
    names = archive.unpack(data, dest)
    assert "src/components/Button.tsx" in names
    assert (dest / "src" / "components" / "Button.tsx").read_text() == "button"


def test_unpack_only_accepts_the_named_subtree(tree, tmp_path):
    dest = tmp_path / "out"
    with pytest.raises(PathInvalid):
        archive.unpack(packed(tree), dest, only="src")
    assert not dest.exists()


def _tar_with(name, data=b"x", linkname=None):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name)
        if linkname is not None:
            info.type = tarfile.SYMTYPE
            info.linkname = linkname
            tar.addfile(info)
        else:
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    buffer.seek(0)
    return buffer


def test_unpack_only_extracts_matching_member(tmp_path):
    names = archive.unpack(_tar_with("App.tsx", b"app"), tmp_path / "src", only="App.tsx")
    assert names == ["App.tsx"]
    assert (tmp_path / "src" / "App.tsx").read_bytes() == b"app"


@pytest.mark.parametrize("name", ["../evil.txt", "a/../../evil.txt"])
def test_unpack_rejects_escaping_members(tmp_path, name):
    dest = tmp_path / "out"
    with pytest.raises(PathInvalid):
        archive.unpack(_tar_with(name), dest)
    assert not (tmp_path / "evil.txt").exists()
    assert not dest.exists()


def test_unpack_rejects_symlink_pointing_outside(tmp_path):
    with pytest.raises(PathInvalid):
        archive.unpack(_tar_with("link", linkname="../../outside"), tmp_path / "out")
