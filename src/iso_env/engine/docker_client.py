"""Docker binding of the ResourceClient protocol.

Wraps the docker SDK low-level API and translates its errors into the iso-env
categories: missing resources become ResourceNotFoundError, name clashes and
operations already in progress become ResourceConflictError, anything else
becomes EngineError.
"""

from __future__ import annotations

import logging
import socket
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.utils.socket import frames_iter

from iso_env.engine.protocol import ContainerSpec, ContainerSummary
from iso_env.errors import (
    EngineError,
    ImageBuildError,
    ResourceConflictError,
    ResourceNotFoundError,
)

logger = logging.getLogger(__name__)

_CONFLICT_MARKERS = (
    "already exists",
    "already in progress",
    "is already connected",
    "is already in use",
)


def translate_error(operation: str, resource: str, exc: Exception) -> EngineError:
    """Map a docker SDK exception onto an EngineError category."""
    if isinstance(exc, NotFound):
        return ResourceNotFoundError(operation, resource, exc)
    if isinstance(exc, APIError):
        status = exc.status_code
        text = str(exc.explanation or exc).lower()
        if status == 404 or "no such" in text:
            return ResourceNotFoundError(operation, resource, exc)
        if status == 409 or any(marker in text for marker in _CONFLICT_MARKERS):
            return ResourceConflictError(operation, resource, exc)
    return EngineError(operation, resource, exc)


def create_docker_client() -> docker.DockerClient:
    """Create Docker client, trying multiple socket locations if needed."""
    last_error: Exception | None = None

    # Try standard from_env first (respects DOCKER_HOST)
    try:
        client = docker.from_env()
        client.ping()
        return client
    except DockerException as e:
        logger.debug(f"docker.from_env() failed: {e}")
        last_error = e

    socket_paths = [
        Path.home() / ".docker" / "run" / "docker.sock",  # Docker Desktop
        Path("/var/run/docker.sock"),
        Path("/run/docker.sock"),
    ]

    for socket_path in socket_paths:
        if socket_path.exists():
            try:
                client = docker.DockerClient(base_url=f"unix://{socket_path}")
                client.ping()
                return client
            except DockerException as e:
                logger.debug(f"Failed to connect via {socket_path}: {e}")
                last_error = e
                continue

    raise EngineError(
        "connect",
        "docker",
        f"Could not connect to Docker. Make sure Docker is running. Last error: {last_error}",
    )


class DockerExecStream:
    """A hijacked exec socket."""

    def __init__(self, sock: Any, tty: bool) -> None:
        self._sock = sock
        self._tty = tty
        # SocketIO wraps the real socket; writes and shutdown go to that one
        self._raw = getattr(sock, "_sock", sock)

    def frames(self) -> Iterator[tuple[int, bytes]]:
        for stream_id, data in frames_iter(self._sock, self._tty):
            if data:
                yield stream_id, data

    def send(self, data: bytes) -> None:
        self._raw.sendall(data)

    def close_write(self) -> None:
        try:
            self._raw.shutdown(socket.SHUT_WR)
        except OSError as e:
            logger.debug(f"Half-close of exec socket failed: {e}")

    def close(self) -> None:
        # Shutdown wakes a reader blocked in frames(); closing SocketIO alone does not
        try:
            self._raw.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Shutdown of exec socket failed: {e}")
        for sock in (self._sock, self._raw):
            try:
                sock.close()
            except OSError as e:
                logger.debug(f"Closing exec socket failed: {e}")


class DockerResourceClient:
    """ResourceClient backed by the docker SDK."""

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        self._client = client or create_docker_client()
        self._api = self._client.api

    # -- images --------------------------------------------------------------

    def image_exists(self, tag: str) -> bool:
        try:
            self._api.inspect_image(tag)
            return True
        except NotFound:
            return False
        except DockerException as e:
            raise translate_error("inspect image", tag, e) from e

    def build_image(self, context: str, dockerfile: str, tag: str) -> Iterator[str]:
        log: list[str] = []
        try:
            for chunk in self._api.build(
                path=context, dockerfile=dockerfile, tag=tag, rm=True, decode=True
            ):
                if "error" in chunk:
                    detail = chunk.get("errorDetail", {}).get("message") or chunk["error"]
                    log.append(str(detail))
                    raise ImageBuildError(tag, "".join(log), detail)
                text = chunk.get("stream")
                if text:
                    log.append(text)
                    yield text
        except DockerException as e:
            raise ImageBuildError(tag, "".join(log), e) from e

    def pull_image(self, image: str) -> None:
        try:
            for chunk in self._api.pull(image, stream=True, decode=True):
                if "error" in chunk:
                    raise EngineError("pull image", image, chunk["error"])
                if status := chunk.get("status"):
                    logger.debug(f"{image}: {status} {chunk.get('progress', '')}".rstrip())
        except DockerException as e:
            raise translate_error("pull image", image, e) from e

    def remove_image(self, tag: str) -> None:
        try:
            self._api.remove_image(tag, force=True)
        except DockerException as e:
            raise translate_error("remove image", tag, e) from e

    # -- containers ----------------------------------------------------------

    @staticmethod
    def _summary(raw: dict[str, Any]) -> ContainerSummary:
        names = raw.get("Names") or [""]
        return ContainerSummary(
            id=raw["Id"],
            name=names[0].lstrip("/"),
            state=raw.get("State", ""),
            labels=raw.get("Labels") or {},
            image=raw.get("Image", ""),
        )

    def list_containers(
        self,
        all: bool = True,
        labels: dict[str, str] | None = None,
        name: str | None = None,
    ) -> list[ContainerSummary]:
        filters: dict[str, Any] = {}
        if labels:
            filters["label"] = [f"{k}={v}" for k, v in labels.items()]
        if name:
            filters["name"] = name
        try:
            raw = self._api.containers(all=all, filters=filters)
        except DockerException as e:
            raise translate_error("list containers", name or "*", e) from e
        summaries = [self._summary(c) for c in raw]
        if name:
            # The engine's name filter is a substring match
            summaries = [s for s in summaries if s.name == name]
        return summaries

    def create_container(self, spec: ContainerSpec) -> str:
        api = self._api
        host_config = api.create_host_config(
            binds=spec.binds or None,
            auto_remove=spec.auto_remove,
            privileged=spec.privileged,
            extra_hosts=spec.extra_hosts or None,
            port_bindings=spec.ports or None,
        )
        networking_config = None
        if spec.network:
            networking_config = api.create_networking_config(
                {spec.network: api.create_endpoint_config(aliases=spec.aliases or None)}
            )
        try:
            result = api.create_container(
                image=spec.image,
                command=spec.command or None,
                name=spec.name,
                environment=spec.environment or None,
                labels=spec.labels,
                working_dir=spec.working_dir,
                hostname=spec.hostname,
                ports=list(spec.ports) or None,
                host_config=host_config,
                networking_config=networking_config,
            )
        except DockerException as e:
            raise translate_error("create container", spec.name, e) from e
        return result["Id"]

    def start_container(self, container_id: str) -> None:
        try:
            self._api.start(container_id)
        except DockerException as e:
            raise translate_error("start container", container_id, e) from e

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        try:
            self._api.stop(container_id, timeout=timeout)
        except DockerException as e:
            raise translate_error("stop container", container_id, e) from e

    def remove_container(self, container_id: str, force: bool = False) -> None:
        try:
            self._api.remove_container(container_id, force=force)
        except DockerException as e:
            raise translate_error("remove container", container_id, e) from e

    # -- exec ----------------------------------------------------------------

    def exec_create(
        self,
        container_id: str,
        command: list[str],
        environment: dict[str, str],
        workdir: str | None,
        tty: bool,
    ) -> str:
        try:
            result = self._api.exec_create(
                container_id,
                command,
                stdin=True,
                stdout=True,
                stderr=True,
                tty=tty,
                environment=environment,
                workdir=workdir,
            )
        except DockerException as e:
            raise translate_error("create exec", container_id, e) from e
        return result["Id"]

    def exec_attach(self, exec_id: str, tty: bool) -> DockerExecStream:
        try:
            sock = self._api.exec_start(exec_id, tty=tty, socket=True)
        except DockerException as e:
            raise translate_error("attach exec", exec_id, e) from e
        return DockerExecStream(sock, tty)

    def exec_resize(self, exec_id: str, height: int, width: int) -> None:
        try:
            self._api.exec_resize(exec_id, height=height, width=width)
        except DockerException as e:
            raise translate_error("resize exec", exec_id, e) from e

    def exec_inspect(self, exec_id: str) -> int | None:
        try:
            return self._api.exec_inspect(exec_id).get("ExitCode")
        except DockerException as e:
            raise translate_error("inspect exec", exec_id, e) from e

    # -- networks ------------------------------------------------------------

    def network_exists(self, name: str) -> bool:
        try:
            networks = self._api.networks(names=[name])
        except DockerException as e:
            raise translate_error("list networks", name, e) from e
        return any(n.get("Name") == name for n in networks)

    def list_networks(self, dangling: bool = False) -> list[str]:
        filters = {"dangling": True} if dangling else None
        try:
            networks = self._api.networks(filters=filters)
        except DockerException as e:
            raise translate_error("list networks", "*", e) from e
        return [n["Name"] for n in networks]

    def create_network(self, name: str, labels: dict[str, str] | None = None) -> None:
        try:
            self._api.create_network(name, driver="bridge", labels=labels)
        except DockerException as e:
            raise translate_error("create network", name, e) from e

    def remove_network(self, name: str) -> None:
        try:
            self._api.remove_network(name)
        except DockerException as e:
            raise translate_error("remove network", name, e) from e

    def connect_network(self, network: str, container_id: str, aliases: list[str]) -> None:
        try:
            self._api.connect_container_to_network(container_id, network, aliases=aliases or None)
        except DockerException as e:
            raise translate_error("connect network", network, e) from e

    # -- volumes -------------------------------------------------------------

    def volume_exists(self, name: str) -> bool:
        try:
            self._api.inspect_volume(name)
            return True
        except NotFound:
            return False
        except DockerException as e:
            raise translate_error("inspect volume", name, e) from e

    def list_volumes(self, dangling: bool = False) -> list[str]:
        filters = {"dangling": True} if dangling else None
        try:
            result = self._api.volumes(filters=filters)
        except DockerException as e:
            raise translate_error("list volumes", "*", e) from e
        return [v["Name"] for v in (result.get("Volumes") or [])]

    def create_volume(self, name: str, labels: dict[str, str] | None = None) -> None:
        try:
            self._api.create_volume(name, labels=labels)
        except DockerException as e:
            raise translate_error("create volume", name, e) from e

    def remove_volume(self, name: str) -> None:
        try:
            self._api.remove_volume(name)
        except DockerException as e:
            raise translate_error("remove volume", name, e) from e

    def close(self) -> None:
        self._client.close()
