from __future__ import annotations

import io
import itertools
import posixpath
import re
import shlex
import socket as pysocket
import struct
import tarfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
import requests
from docker.errors import APIError, ImageNotFound, NotFound

from aidev.config import SandboxSettings
from aidev.sandbox.executor import FILE_MISSING_MARKER, CommandChannel
from aidev.sandbox.ports import PortAllocator
from aidev.sandbox.rebuild import RebuildPipeline
from aidev.sandbox.registry import SandboxController
from aidev.sandbox.sync import WorkspaceSync
from aidev.sandbox.workspace import WorkspaceMirror


# ── Fake Docker engine ───────────────────────────────────────────────────


class FakeContainer:
    """In-memory stand-in for docker.models.containers.Container."""

    def __init__(self, client: "FakeDockerClient", container_id: str, name: str, image: str, port: Optional[int]):
        self.client = client
        self.id = container_id
        self.name = name
        self.image = image
        self.port = port
        self.status = "created"
        self.files: Dict[str, bytes] = {}
        self.dirs: set = set()
        self.log_lines: List[str] = []
        self.put_calls: List[str] = []
        self.start_error: Optional[Exception] = None
        self.stop_calls: List[int] = []

    @property
    def attrs(self) -> dict:
        bindings = {f"{self.port}/tcp": [{"HostIp": "0.0.0.0", "HostPort": str(self.port)}]} if self.port else {}
        return {
            "Id": self.id,
            "Name": f"/{self.name}",
            "Created": "2026-10-19T10:00:00.123456789Z",
            "State": {"Running": self.status == "running", "Status": self.status},
            "NetworkSettings": {"Ports": bindings if self.status == "running" else {}},
            "HostConfig": {"PortBindings": bindings},
        }

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.status = "running"

    def stop(self, timeout=10):
        self.stop_calls.append(timeout)
        self.status = "exited"

    def unpause(self):
        self.status = "running"

    def reload(self):
        pass

    def remove(self, force=False, v=False):
        self.client.remove_container_obj(self, force=force)

    def logs(self, stdout=True, stderr=True, tail="all"):
        lines = self.log_lines if tail == "all" else self.log_lines[-tail:]
        return "".join(line + "\n" for line in lines).encode()

    def put_archive(self, path, data):
        if self.client.put_error is not None:
            raise self.client.put_error
        if self.client.reject_put:
            return False
        raw = data.read() if hasattr(data, "read") else data
        self.put_calls.append(path)
        with tarfile.open(fileobj=io.BytesIO(raw), mode="r:*") as tar:
            for member in tar.getmembers():
                if member.isdir():
                    self.dirs.add(member.name)
                elif member.isfile():
                    self.files[member.name] = tar.extractfile(member).read()
        return True

    def get_archive(self, path, chunk_size=None, encode_stream=False):
        """Tar up a file or directory below /app, named from its basename."""
        rel = path[len("/app/"):] if path.startswith("/app/") else path.lstrip("/")
        names = sorted(n for n in self.files if n == rel or n.startswith(rel + "/"))
        if not names:
            raise NotFound(f"Could not find the file {path} in container {self.name}")
        base = posixpath.dirname(rel)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            for name in names:
                data = self.files[name]
                info = tarfile.TarInfo(name[len(base) + 1:] if base else name)
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
        raw = buffer.getvalue()
        stat = {"name": posixpath.basename(rel), "size": len(raw)}
        return iter([raw[i:i + 512] for i in range(0, len(raw), 512)]), stat


class FakeContainers:
    def __init__(self, client: "FakeDockerClient"):
        self.client = client

    def create(self, image, name=None, command=None, tty=False, working_dir=None, ports=None, labels=None, **kwargs):
        if self.client.create_error is not None:
            raise self.client.create_error
        if any(c.name == name for c in list(self.client.containers_by_id.values())):
            raise APIError(f"Conflict. The container name \"/{name}\" is already in use")
        port = None
        if ports:
            port = next(iter(ports.values()))
            for other in list(self.client.containers_by_id.values()):
                if other.port == port:
                    raise APIError("port is already allocated")
        container_id = f"{next(self.client.ids):064x}"
        container = FakeContainer(self.client, container_id, name, image, port)
        container.working_dir = working_dir
        container.labels = labels or {}
        self.client.containers_by_id[container_id] = container
        self.client.created.append(container)
        return container

    def get(self, id_or_name):
        if self.client.unreachable:
            raise requests.exceptions.ConnectionError("Connection refused")
        for container in list(self.client.containers_by_id.values()):
            if container.id == id_or_name or container.name == id_or_name:
                return container
        raise NotFound(f"No such container: {id_or_name}")

    def list(self, all=False, filters=None):
        if self.client.unreachable:
            raise requests.exceptions.ConnectionError("Connection refused")
        name_filter = (filters or {}).get("name", "")
        return [
            c for c in list(self.client.containers_by_id.values())
            if name_filter in c.name and (all or c.status == "running")
        ]


class FakeImages:
    def __init__(self, present):
        self.present = set(present)

    def get(self, name):
        if name not in self.present:
            raise ImageNotFound(f"No such image: {name}")
        return name


class FakeAPI:
    """The low-level APIClient surface used by the engine."""

    def __init__(self, client: "FakeDockerClient"):
        self.client = client
        self.execs: Dict[str, dict] = {}
        self.exec_ids = itertools.count(1)

    # images
    def pull(self, repository, tag=None, stream=False, decode=False):
        image = f"{repository}:{tag}"
        self.client.pulled.append(image)
        yield {"status": f"Pulling from library/{repository}", "id": tag}
        if image in self.client.pull_failures:
            yield {"error": f"manifest for {image} not found"}
            return
        yield {"status": "Downloading", "progress": "[====>   ]"}
        yield {"status": f"Status: Downloaded newer image for {image}"}
        self.client.images.present.add(image)

    # containers
    def inspect_container(self, container_id):
        return self.client.containers.get(container_id).attrs

    def stop(self, container_id, timeout=10):
        self.client.containers.get(container_id).stop(timeout=timeout)

    def remove_container(self, container_id, force=False, v=False):
        container = self.client.containers.get(container_id)
        self.client.remove_container_obj(container, force=force)

    # exec
    def exec_create(self, container, cmd, stdout=True, stderr=True, workdir=None, **kwargs):
        target = self.client.containers.get(container)
        if target.status != "running":
            raise APIError(f"Container {container} is not running")
        exec_id = f"exec-{next(self.exec_ids)}"
        command = cmd[-1]
        self.execs[exec_id] = {"container": target, "command": command, "workdir": workdir}
        self.client.commands.append(command)
        return {"Id": exec_id}

    def exec_start(self, exec_id, detach=False, tty=False, stream=False, socket=False, demux=False):
        record = self.execs[exec_id]
        if detach:
            self.client.detached.append(record["command"])
            return b""
        failure = self.client.exec_failures.get(record["command"])
        if failure is not None:
            raise failure
        reader, writer = pysocket.socketpair()
        feeder = threading.Thread(
            target=self._feed,
            args=(writer, record["container"], record["command"]),
            daemon=True,
        )
        feeder.start()
        self.client.feeders.append(feeder)
        return reader

    def _feed(self, writer, container, command):
        """Write the handler output as multiplexed stdout frames, like dockerd."""
        try:
            output = self.client.exec_handler(container, command)
            for i in range(0, len(output), 7):
                chunk = output[i:i + 7]
                writer.sendall(struct.pack(">BxxxL", 1, len(chunk)) + chunk)
        except OSError:
            pass
        finally:
            writer.close()


class FakeDockerClient:
    """Explicit client handle replacing docker.DockerClient in tests."""

    def __init__(self, images=("node:18",)):
        self.ids = itertools.count(0xA1)
        self.containers_by_id: Dict[str, FakeContainer] = {}
        self.containers = FakeContainers(self)
        self.images = FakeImages(images)
        self.api = FakeAPI(self)
        self.unreachable = False
        self.pull_failures: set = set()
        self.pulled: List[str] = []
        self.created: List[FakeContainer] = []
        self.commands: List[str] = []
        self.detached: List[str] = []
        self.create_error: Optional[Exception] = None
        self.put_error: Optional[Exception] = None
        self.reject_put = False
        self.remove_failures = 0
        self.removed: List[str] = []
        self.exec_handler: Callable[[FakeContainer, str], bytes] = default_exec_handler
        self.exec_failures: Dict[str, Exception] = {}
        self.feeders: List[threading.Thread] = []
        self.release = threading.Event()
        self.closed = False

    def ping(self):
        if self.unreachable:
            raise requests.exceptions.ConnectionError("Connection refused")
        return True

    def close(self):
        self.closed = True

    def remove_container_obj(self, container: FakeContainer, force=False):
        if container.status == "running" and not force:
            raise APIError("You cannot remove a running container. Stop the container before attempting removal")
        if self.remove_failures and not force:
            self.remove_failures -= 1
            raise APIError("removal of container is already in progress")
        container.status = "removing"
        self.containers_by_id.pop(container.id, None)
        self.removed.append(container.id)


_READ_SCRIPT = re.compile(r"^if \[ -f (.+?) \]; then cat -- .+; else printf \S+; fi$")


def default_exec_handler(container: FakeContainer, command: str) -> bytes:
    """Emulate the handful of shell commands the engine issues."""
    match = _READ_SCRIPT.match(command)
    if match:
        path = shlex.split(match.group(1))[0]
        if path in container.files:
            return container.files[path]
        return FILE_MISSING_MARKER.encode()
    if command.startswith("sleep "):
        time.sleep(float(command.split()[1]))
        return b""
    if command.startswith("tail -f "):
        # Never ends on its own, like a foreground dev server
        container.client.release.wait(timeout=30)
        return b""
    if command.startswith("rm -rf -- "):
        path = shlex.split(command)[3]
        for name in [n for n in container.files if n == path or n.startswith(path + "/")]:
            del container.files[name]
        container.dirs = {d for d in container.dirs if d != path and not d.startswith(path + "/")}
        return b""
    if command.startswith("cat "):
        path = shlex.split(command)[1]
        return container.files.get(path, f"cat: {path}: No such file or directory\n".encode())
    if command.startswith("find "):
        entries = sorted(container.dirs | set(container.files))
        return "".join(f"{e}\n" for e in entries).encode()
    if command.startswith("echo "):
        return command[5:].encode() + b"\n"
    if command == "npm install":
        return b"added 42 packages in 3s\n"
    return b""


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path: Path) -> SandboxSettings:
    return SandboxSettings(
        workdir_base=tmp_path / "workdirs",
        short_timeout=2.0,
        long_timeout=5.0,
        stop_grace=1,
        log_poll_interval=0.01,
    )


@pytest.fixture
def client():
    fake = FakeDockerClient()
    yield fake
    fake.release.set()
    for feeder in fake.feeders:
        feeder.join(timeout=5)


@pytest.fixture
def mirror(settings: SandboxSettings) -> WorkspaceMirror:
    return WorkspaceMirror(settings.workdir_base)


@pytest.fixture
def channel(client, settings) -> CommandChannel:
    return CommandChannel(client, settings)


@pytest.fixture
def sync(client, mirror, settings) -> WorkspaceSync:
    return WorkspaceSync(client, mirror, settings)


@pytest.fixture
def rebuilder(sync, channel, settings) -> RebuildPipeline:
    return RebuildPipeline(sync, channel, settings)


@pytest.fixture
def controller(client, mirror, settings) -> SandboxController:
    return SandboxController(client, mirror, PortAllocator(), settings)


@pytest.fixture
def running_container(client) -> FakeContainer:
    """A started container not created through the controller."""
    container = client.containers.create("node:18", name="ai-dev-fixture-1", ports={"45000/tcp": 45000})
    container.start()
    return container
