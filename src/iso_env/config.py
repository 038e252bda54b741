"""Configuration schemas for iso-env.

Descriptors are handed to the core as plain mappings (already parsed by the
caller) and validated here. Runtime settings are read from the process
environment once per invocation and passed explicitly to every component.
"""

from __future__ import annotations

import os
import posixpath
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from iso_env.errors import ConfigurationError

DESCRIPTOR_DIR = ".iso"
DEFAULT_DOCKERFILE = ".iso/Dockerfile"
DEFAULT_WORKDIR = "/workspace"
DEFAULT_HELPER = ".iso/iso"

# Where the helper executable is mounted inside every container
HELPER_MOUNT = "/iso"

# Container entrypoint: the helper's zombie-reaping init loop
INIT_COMMAND = [HELPER_MOUNT, "init"]


def _str_dict(value: Any, what: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"{what} must be a mapping")
    return {str(k): str(v) for k, v in value.items()}


def _str_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"{what} must be a list")
    return [str(v) for v in value]


@dataclass
class ServiceSpec:
    """An auxiliary container that runs alongside the shell container."""

    name: str
    image: str
    command: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    port: int | None = None
    extra_hosts: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> ServiceSpec:
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"service '{name}' must be a mapping")
        image = data.get("image")
        if not image:
            raise ConfigurationError(f"service '{name}' requires an image")

        command = data.get("command")
        if isinstance(command, str):
            command = command.split()

        port = data.get("port")
        if port is not None:
            try:
                port = int(port)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"service '{name}' has invalid port {port!r}") from e

        return cls(
            name=name,
            image=str(image),
            command=_str_list(command, f"service '{name}' command"),
            environment=_str_dict(data.get("environment"), f"service '{name}' environment"),
            port=port,
            extra_hosts=_str_list(data.get("extra_hosts"), f"service '{name}' extra_hosts"),
        )


@dataclass(frozen=True)
class PortMapping:
    """A published port: host side and container side."""

    host: int
    container: int

    @classmethod
    def parse(cls, value: str | int) -> PortMapping:
        """Parse "host:container" or a bare "container" port (published on the same number)."""
        text = str(value)
        host_part, sep, container_part = text.partition(":")
        if not sep:
            container_part = host_part
        try:
            host, container = int(host_part), int(container_part)
        except ValueError as e:
            raise ConfigurationError(f"invalid port mapping {text!r}") from e
        for port in (host, container):
            if not 0 < port < 65536:
                raise ConfigurationError(f"port out of range in {text!r}")
        return cls(host=host, container=container)


@dataclass
class PeerSpec:
    """One node of a multi-container peer group."""

    name: str
    hostname: str
    environment: dict[str, str] = field(default_factory=dict)
    ports: list[PortMapping] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> PeerSpec:
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"peer '{name}' must be a mapping")
        hostname = data.get("hostname")
        if not hostname:
            raise ConfigurationError(f"peer '{name}' requires a hostname")
        return cls(
            name=name,
            hostname=str(hostname),
            environment=_str_dict(data.get("environment"), f"peer '{name}' environment"),
            ports=[PortMapping.parse(p) for p in _str_list(data.get("ports"), f"peer '{name}' ports")],
        )


@dataclass
class PeersSpec:
    """The peer group of a project."""

    peers: dict[str, PeerSpec]
    network: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PeersSpec:
        if not isinstance(data, Mapping):
            raise ConfigurationError("peers descriptor must be a mapping")
        raw = data.get("peers")
        if not raw or not isinstance(raw, Mapping):
            raise ConfigurationError("peers descriptor must define at least one peer")
        peers = {str(name): PeerSpec.from_dict(str(name), spec) for name, spec in raw.items()}
        network = data.get("network")
        return cls(peers=peers, network=str(network) if network else None)


@dataclass
class ProjectDescriptor:
    """Everything a project declares about its shell environment."""

    dockerfile: str = DEFAULT_DOCKERFILE
    workdir: str = DEFAULT_WORKDIR
    privileged: bool = False
    volumes: list[str] = field(default_factory=list)
    cache: list[str] = field(default_factory=list)
    binds: list[str] = field(default_factory=list)
    extra_hosts: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    helper_path: str = DEFAULT_HELPER
    services: dict[str, ServiceSpec] = field(default_factory=dict)
    peers: PeersSpec | None = None

    def __post_init__(self) -> None:
        if not posixpath.isabs(self.workdir):
            raise ConfigurationError(f"workdir must be an absolute path, got {self.workdir!r}")
        for path in [*self.volumes, *self.cache]:
            if not posixpath.isabs(path):
                raise ConfigurationError(f"volume path must be absolute, got {path!r}")
        for bind in self.binds:
            if ":" not in bind:
                raise ConfigurationError(f"bind must be 'host:container[:opts]', got {bind!r}")

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any] | None,
        services: Mapping[str, Any] | None = None,
        peers: Mapping[str, Any] | None = None,
    ) -> ProjectDescriptor:
        """Create a descriptor from parsed config, service and peer mappings."""
        data = data or {}
        if not isinstance(data, Mapping):
            raise ConfigurationError("project descriptor must be a mapping")
        return cls(
            dockerfile=str(data.get("dockerfile", DEFAULT_DOCKERFILE)),
            workdir=str(data.get("workdir", DEFAULT_WORKDIR)),
            privileged=bool(data.get("privileged", False)),
            volumes=_str_list(data.get("volumes"), "volumes"),
            cache=_str_list(data.get("cache"), "cache"),
            binds=_str_list(data.get("binds"), "binds"),
            extra_hosts=_str_list(data.get("extra_hosts"), "extra_hosts"),
            environment=_str_dict(data.get("environment"), "environment"),
            helper_path=str(data.get("helper", DEFAULT_HELPER)),
            services={
                str(name): ServiceSpec.from_dict(str(name), spec)
                for name, spec in (services or {}).items()
            },
            peers=PeersSpec.from_dict(peers) if peers is not None else None,
        )


@dataclass
class RuntimeSettings:
    """Per-invocation settings read from the caller's environment."""

    cwd: Path = field(default_factory=Path.cwd)
    session_override: str | None = None
    cache_dir: Path | None = None
    term: str | None = None
    debug: bool = False
    uid: int = field(default_factory=os.getuid)
    gid: int = field(default_factory=os.getgid)
    home: Path = field(default_factory=Path.home)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> RuntimeSettings:
        """Load settings from environment variables.

        ISO_SESSION overrides the session, ISO_CACHE_DIR replaces cache volumes
        with host directories, DEBUG (anything but "" or "0") enables debug logs.
        """
        env = os.environ if environ is None else environ
        settings = cls(cwd=cwd or Path.cwd())

        if session := env.get("ISO_SESSION"):
            settings.session_override = session
        if cache_dir := env.get("ISO_CACHE_DIR"):
            settings.cache_dir = Path(cache_dir).expanduser()
        settings.term = env.get("TERM") or None
        settings.debug = env.get("DEBUG", "") not in ("", "0")
        if home := env.get("HOME"):
            settings.home = Path(home)

        return settings
