"""Resource client protocol and types.

Defines the ResourceClient protocol every container-engine binding implements,
the container creation request, and the label-based query used to find
managed containers.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from iso_env.types import (
    LABEL_EPHEMERAL,
    LABEL_MANAGED,
    LABEL_PROJECT_DIR,
    LABEL_PROJECT_NAME,
    LABEL_SESSION,
    ManagedContainer,
)

# Stream ids of a demultiplexed exec stream
STDOUT = 1
STDERR = 2


@dataclass
class ContainerSpec:
    """Everything needed to create one container."""

    name: str
    image: str
    command: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    binds: list[str] = field(default_factory=list)
    working_dir: str | None = None
    hostname: str | None = None
    network: str | None = None
    aliases: list[str] = field(default_factory=list)
    ports: dict[int, int] = field(default_factory=dict)  # container port -> host port
    extra_hosts: list[str] = field(default_factory=list)
    auto_remove: bool = False
    privileged: bool = False


@dataclass
class ContainerSummary:
    """One row of a container listing."""

    id: str
    name: str
    state: str
    labels: dict[str, str] = field(default_factory=dict)
    image: str = ""


@runtime_checkable
class ExecStream(Protocol):
    """A hijacked exec connection.

    frames() yields (stream_id, payload) until the remote side closes. In TTY
    mode there is no multiplexing and every frame is reported as STDOUT.
    """

    def frames(self) -> Iterator[tuple[int, bytes]]: ...

    def send(self, data: bytes) -> None: ...

    def close_write(self) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class ResourceClient(Protocol):
    """Operations iso-env needs from a container engine.

    Implementations raise ResourceNotFoundError / ResourceConflictError for
    missing and already-present resources, EngineError for everything else.
    """

    # Images
    def image_exists(self, tag: str) -> bool: ...

    def build_image(self, context: str, dockerfile: str, tag: str) -> Iterator[str]:
        """Build and yield log lines. Raises ImageBuildError with the full log."""
        ...

    def pull_image(self, image: str) -> None: ...

    def remove_image(self, tag: str) -> None: ...

    # Containers
    def list_containers(
        self,
        all: bool = True,
        labels: dict[str, str] | None = None,
        name: str | None = None,
    ) -> list[ContainerSummary]: ...

    def create_container(self, spec: ContainerSpec) -> str: ...

    def start_container(self, container_id: str) -> None: ...

    def stop_container(self, container_id: str, timeout: int = 10) -> None: ...

    def remove_container(self, container_id: str, force: bool = False) -> None: ...

    # Exec
    def exec_create(
        self,
        container_id: str,
        command: list[str],
        environment: dict[str, str],
        workdir: str | None,
        tty: bool,
    ) -> str: ...

    def exec_attach(self, exec_id: str, tty: bool) -> ExecStream: ...

    def exec_resize(self, exec_id: str, height: int, width: int) -> None: ...

    def exec_inspect(self, exec_id: str) -> int | None: ...

    # Networks
    def network_exists(self, name: str) -> bool: ...

    def list_networks(self, dangling: bool = False) -> list[str]: ...

    def create_network(self, name: str, labels: dict[str, str] | None = None) -> None: ...

    def remove_network(self, name: str) -> None: ...

    def connect_network(self, network: str, container_id: str, aliases: list[str]) -> None: ...

    # Volumes
    def volume_exists(self, name: str) -> bool: ...

    def list_volumes(self, dangling: bool = False) -> list[str]: ...

    def create_volume(self, name: str, labels: dict[str, str] | None = None) -> None: ...

    def remove_volume(self, name: str) -> None: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class ManagedFilter:
    """Label query over managed containers. None fields match anything."""

    project_name: str | None = None
    project_dir: str | None = None
    session: str | None = None
    ephemeral: bool | None = None
    include_stopped: bool = True

    def labels(self) -> dict[str, str]:
        labels = {LABEL_MANAGED: "true"}
        if self.project_name is not None:
            labels[LABEL_PROJECT_NAME] = self.project_name
        if self.project_dir is not None:
            labels[LABEL_PROJECT_DIR] = self.project_dir
        if self.session is not None:
            labels[LABEL_SESSION] = self.session
        if self.ephemeral is not None:
            labels[LABEL_EPHEMERAL] = "true" if self.ephemeral else "false"
        return labels


def list_managed(client: ResourceClient, query: ManagedFilter | None = None) -> list[ManagedContainer]:
    """List managed containers matching a label query."""
    query = query or ManagedFilter()
    summaries = client.list_containers(all=query.include_stopped, labels=query.labels())
    return [
        ManagedContainer.from_labels(s.id, s.name, s.state, s.labels)
        for s in summaries
    ]
