"""Test fixtures for iso-env.

FakeEngine is an in-memory ResourceClient: it keeps images, containers,
networks and volumes in dicts, reports the same error categories the docker
binding does, and records every call so tests can assert on engine traffic.
"""

from __future__ import annotations

import itertools
import shutil
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from iso_env.config import RuntimeSettings
from iso_env.engine.protocol import STDOUT, ContainerSpec, ContainerSummary
from iso_env.errors import (
    EngineError,
    ImageBuildError,
    ResourceConflictError,
    ResourceNotFoundError,
)

# =============================================================================
# Fake exec stream
# =============================================================================


class FakeExecStream:
    """Exec stream replaying canned frames.

    With block=True, frames() waits until close() after the canned frames, like
    a remote process that never exits on its own. With echo=True it waits for
    close_write() and then echoes everything sent.
    """

    def __init__(
        self,
        frames: list[tuple[int, bytes]] | None = None,
        block: bool = False,
        echo: bool = False,
    ) -> None:
        self._frames = list(frames or [])
        self._block = block
        self._echo = echo
        self.sent = bytearray()
        self.write_closed = threading.Event()
        self.closed = threading.Event()

    def frames(self) -> Iterator[tuple[int, bytes]]:
        yield from self._frames
        if self._echo:
            self.write_closed.wait(timeout=5)
            if self.sent:
                yield STDOUT, bytes(self.sent)
        if self._block:
            self.closed.wait(timeout=5)

    def send(self, data: bytes) -> None:
        self.sent.extend(data)

    def close_write(self) -> None:
        self.write_closed.set()

    def close(self) -> None:
        self.closed.set()


@dataclass
class ExecRecord:
    """One exec as the fake engine saw it."""

    container_id: str
    command: list[str]
    environment: dict[str, str]
    workdir: str | None
    tty: bool
    exit_code: int = 0
    stream: FakeExecStream | None = None
    resizes: list[tuple[int, int]] = field(default_factory=list)


# Returns (frames, exit_code) or a ready-made stream plus exit code
ExecHandler = Callable[["FakeEngine", ExecRecord], tuple[Any, int]]


def default_exec_handler(engine: FakeEngine, record: ExecRecord) -> tuple[Any, int]:
    return [], 0


# =============================================================================
# Fake engine
# =============================================================================


@dataclass
class FakeContainer:
    id: str
    spec: ContainerSpec
    state: str = "created"
    networks: set[str] = field(default_factory=set)

    @property
    def name(self) -> str:
        return self.spec.name


class FakeEngine:
    """In-memory ResourceClient."""

    def __init__(self) -> None:
        self.images: set[str] = set()
        self.containers: dict[str, FakeContainer] = {}
        self.networks: dict[str, dict[str, str]] = {}
        self.volumes: dict[str, dict[str, str]] = {}
        self.execs: dict[str, ExecRecord] = {}
        self.calls: list[tuple[str, str]] = []
        self.builds: list[str] = []
        self.pulls: list[str] = []
        self.exec_handler: ExecHandler = default_exec_handler
        # op name -> exception raised on the next call of that op
        self.failures: dict[str, EngineError] = {}
        # container names another "process" creates right before ours
        self.race_names: set[str] = set()
        self.build_error: str | None = None
        self.closed = False
        self._ids = itertools.count(1)

    # -- helpers -------------------------------------------------------------

    def _record(self, op: str, target: str = "") -> None:
        self.calls.append((op, target))
        if op in self.failures:
            raise self.failures.pop(op)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids):012d}"

    def _get(self, container_id: str, op: str) -> FakeContainer:
        container = self.containers.get(container_id)
        if container is None:
            raise ResourceNotFoundError(op, container_id, "No such container")
        return container

    def by_name(self, name: str) -> FakeContainer | None:
        return next((c for c in self.containers.values() if c.name == name), None)

    def _referenced_volumes(self) -> set[str]:
        used = set()
        for container in self.containers.values():
            for bind in container.spec.binds:
                source = bind.split(":", 1)[0]
                if not source.startswith("/"):
                    used.add(source)
        return used

    def ops(self, op: str) -> list[str]:
        return [target for name, target in self.calls if name == op]

    def add_container(
        self,
        name: str,
        labels: dict[str, str] | None = None,
        state: str = "running",
        **spec: Any,
    ) -> str:
        """Insert a container directly, as if another process created it."""
        container_id = self._next_id("c")
        self.containers[container_id] = FakeContainer(
            id=container_id,
            spec=ContainerSpec(name=name, image="img", labels=dict(labels or {}), **spec),
            state=state,
        )
        return container_id

    # -- images --------------------------------------------------------------

    def image_exists(self, tag: str) -> bool:
        self._record("image_exists", tag)
        return tag in self.images

    def build_image(self, context: str, dockerfile: str, tag: str) -> Iterator[str]:
        self._record("build_image", tag)
        self.builds.append(tag)
        yield f"Step 1/1 : FROM scratch ({dockerfile})\n"
        if self.build_error:
            raise ImageBuildError(tag, "Step 1/1\n" + self.build_error, self.build_error)
        self.images.add(tag)
        yield f"Successfully tagged {tag}\n"

    def pull_image(self, image: str) -> None:
        self._record("pull_image", image)
        self.pulls.append(image)
        self.images.add(image)

    def remove_image(self, tag: str) -> None:
        self._record("remove_image", tag)
        if tag not in self.images:
            raise ResourceNotFoundError("remove image", tag, "No such image")
        self.images.discard(tag)

    # -- containers ----------------------------------------------------------

    def list_containers(
        self,
        all: bool = True,
        labels: dict[str, str] | None = None,
        name: str | None = None,
    ) -> list[ContainerSummary]:
        self._record("list_containers", name or "")
        result = []
        for container in self.containers.values():
            if not all and container.state != "running":
                continue
            if name is not None and container.name != name:
                continue
            if labels and any(container.spec.labels.get(k) != v for k, v in labels.items()):
                continue
            result.append(
                ContainerSummary(
                    id=container.id,
                    name=container.name,
                    state=container.state,
                    labels=dict(container.spec.labels),
                    image=container.spec.image,
                )
            )
        return result

    def create_container(self, spec: ContainerSpec) -> str:
        self._record("create_container", spec.name)
        if spec.name in self.race_names:
            self.race_names.discard(spec.name)
            self.add_container(spec.name, labels=spec.labels, state="created")
        if self.by_name(spec.name) is not None:
            raise ResourceConflictError("create container", spec.name, "name already in use")
        if spec.image not in self.images:
            raise ResourceNotFoundError("create container", spec.name, f"No such image: {spec.image}")
        if spec.network is not None and spec.network not in self.networks:
            raise ResourceNotFoundError("create container", spec.name, f"network {spec.network} not found")
        for bind in spec.binds:
            source = bind.split(":", 1)[0]
            if not source.startswith("/"):
                self.volumes.setdefault(source, {})
        container_id = self._next_id("c")
        container = FakeContainer(id=container_id, spec=spec)
        if spec.network is not None:
            container.networks.add(spec.network)
        self.containers[container_id] = container
        return container_id

    def start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)
        self._get(container_id, "start container").state = "running"

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        self._record("stop_container", container_id)
        container = self._get(container_id, "stop container")
        container.state = "exited"
        if container.spec.auto_remove:
            del self.containers[container_id]

    def remove_container(self, container_id: str, force: bool = False) -> None:
        self._record("remove_container", container_id)
        self._get(container_id, "remove container")
        del self.containers[container_id]

    # -- exec ----------------------------------------------------------------

    def exec_create(
        self,
        container_id: str,
        command: list[str],
        environment: dict[str, str],
        workdir: str | None,
        tty: bool,
    ) -> str:
        self._record("exec_create", container_id)
        container = self._get(container_id, "create exec")
        if container.state != "running":
            raise ResourceConflictError("create exec", container_id, "container is not running")
        exec_id = self._next_id("e")
        self.execs[exec_id] = ExecRecord(
            container_id=container_id,
            command=list(command),
            environment=dict(environment),
            workdir=workdir,
            tty=tty,
        )
        return exec_id

    def exec_attach(self, exec_id: str, tty: bool) -> FakeExecStream:
        self._record("exec_attach", exec_id)
        record = self.execs[exec_id]
        output, record.exit_code = self.exec_handler(self, record)
        record.stream = output if isinstance(output, FakeExecStream) else FakeExecStream(output)
        return record.stream

    def exec_resize(self, exec_id: str, height: int, width: int) -> None:
        self._record("exec_resize", exec_id)
        self.execs[exec_id].resizes.append((height, width))

    def exec_inspect(self, exec_id: str) -> int | None:
        self._record("exec_inspect", exec_id)
        return self.execs[exec_id].exit_code

    # -- networks ------------------------------------------------------------

    def network_exists(self, name: str) -> bool:
        self._record("network_exists", name)
        return name in self.networks

    def list_networks(self, dangling: bool = False) -> list[str]:
        self._record("list_networks")
        if not dangling:
            return list(self.networks)
        used = set().union(*(c.networks for c in self.containers.values()))
        return [n for n in self.networks if n not in used]

    def create_network(self, name: str, labels: dict[str, str] | None = None) -> None:
        self._record("create_network", name)
        if name in self.networks:
            raise ResourceConflictError("create network", name, "network already exists")
        self.networks[name] = dict(labels or {})

    def remove_network(self, name: str) -> None:
        self._record("remove_network", name)
        if name not in self.networks:
            raise ResourceNotFoundError("remove network", name, "No such network")
        if any(name in c.networks for c in self.containers.values()):
            raise EngineError("remove network", name, "network has active endpoints")
        del self.networks[name]

    def connect_network(self, network: str, container_id: str, aliases: list[str]) -> None:
        self._record("connect_network", network)
        container = self._get(container_id, "connect network")
        if network not in self.networks:
            raise ResourceNotFoundError("connect network", network, "No such network")
        if network in container.networks:
            raise ResourceConflictError("connect network", network, "endpoint is already connected")
        container.networks.add(network)

    # -- volumes -------------------------------------------------------------

    def volume_exists(self, name: str) -> bool:
        self._record("volume_exists", name)
        return name in self.volumes

    def list_volumes(self, dangling: bool = False) -> list[str]:
        self._record("list_volumes")
        if not dangling:
            return list(self.volumes)
        used = self._referenced_volumes()
        return [v for v in self.volumes if v not in used]

    def create_volume(self, name: str, labels: dict[str, str] | None = None) -> None:
        self._record("create_volume", name)
        if name in self.volumes:
            raise ResourceConflictError("create volume", name, "volume already exists")
        self.volumes[name] = dict(labels or {})

    def remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)
        if name not in self.volumes:
            raise ResourceNotFoundError("remove volume", name, "No such volume")
        if name in self._referenced_volumes():
            raise ResourceConflictError("remove volume", name, "volume is in use")
        del self.volumes[name]

    def close(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A project root holding a descriptor directory, Dockerfile and helper."""
    root = tmp_path / "myproj"
    (root / ".iso").mkdir(parents=True)
    (root / ".iso" / "Dockerfile").write_text("FROM debian:bookworm-slim\n")
    (root / ".iso" / "iso").write_text("#!/bin/sh\n")
    return root


@pytest.fixture
def home_dir(tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture
def settings(project_dir: Path, home_dir: Path) -> RuntimeSettings:
    return RuntimeSettings(cwd=project_dir, uid=1000, gid=1000, home=home_dir)


def git_available() -> bool:
    return shutil.which("git") is not None
