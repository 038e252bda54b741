"""Peer containers for multi-node testing.

Peers share the shell image, mounts and caches, each gets its own hostname
(also its DNS alias) on a shared peers network. The session's services are
started too and joined to the same network.
"""

from __future__ import annotations

import asyncio
import logging

from iso_env.config import INIT_COMMAND, PeerSpec, PeersSpec
from iso_env.engine.ops import discard_network, ensure_network, stop_and_remove
from iso_env.engine.protocol import ContainerSpec, ManagedFilter, list_managed
from iso_env.errors import ConfigurationError, EngineError, ResourceConflictError
from iso_env.exec_proxy import ExecProxy, ExecRequest, build_exec_env, fixed_exec_env, wrap_command
from iso_env.lifecycle import STOP_TIMEOUT, Reconciler, map_workdir
from iso_env.types import (
    LABEL_MANAGED,
    LABEL_NAME,
    LABEL_PEER,
    LABEL_PEER_NAME,
    LABEL_PROJECT_DIR,
    LABEL_PROJECT_NAME,
    LABEL_ROLE,
    LABEL_SESSION,
    PEERS_SESSION,
    PeerStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_SHELL = ["bash"]


class PeerOrchestrator:
    """Manages the peer group declared by a project."""

    def __init__(self, reconciler: Reconciler) -> None:
        self._reconciler = reconciler
        self._client = reconciler.client
        self._names = reconciler.names
        peers = reconciler.descriptor.peers
        if peers is None:
            raise ConfigurationError("No peers configured for this project")
        self._peers: PeersSpec = peers

    @property
    def network(self) -> str:
        return self._names.peers_network(self._peers.network)

    def _spec(self, name: str) -> PeerSpec:
        spec = self._peers.peers.get(name)
        if spec is None:
            raise ConfigurationError(f"Unknown peer: {name}")
        return spec

    def _labels(self, name: str) -> dict[str, str]:
        project = self._reconciler.project
        return {
            LABEL_MANAGED: "true",
            LABEL_PROJECT_NAME: project.worktree_name,
            LABEL_PROJECT_DIR: str(project.root),
            LABEL_SESSION: PEERS_SESSION,
            LABEL_NAME: name,
            LABEL_ROLE: f"peer:{name}",
            LABEL_PEER: "true",
            LABEL_PEER_NAME: name,
        }

    def _find(self, name: str) -> tuple[str, str] | None:
        found = self._client.list_containers(all=True, name=self._names.peer_container(name))
        if not found:
            return None
        return found[0].id, found[0].state

    def start_peer(self, name: str) -> str:
        """Reuse, start or create one peer container."""
        spec = self._spec(name)
        existing = self._find(name)
        if existing is not None:
            container_id, state = existing
            if state != "running":
                self._client.start_container(container_id)
            return container_id

        descriptor = self._reconciler.descriptor
        self._reconciler.ensure_volumes()
        environment = {
            "ISO_WORKDIR": descriptor.workdir,
            "ISO_SESSION": PEERS_SESSION,
            "ISO_PEER_NAME": name,
            "ISO_PEER_HOSTNAME": spec.hostname,
            **spec.environment,
        }
        container = ContainerSpec(
            name=self._names.peer_container(name),
            image=self._names.image,
            command=list(INIT_COMMAND),
            environment=environment,
            labels=self._labels(name),
            binds=self._reconciler.build_mounts(),
            working_dir=descriptor.workdir,
            hostname=spec.hostname,
            network=self.network,
            aliases=[spec.hostname],
            ports={p.container: p.host for p in spec.ports},
            extra_hosts=list(descriptor.extra_hosts),
            privileged=descriptor.privileged,
        )
        try:
            container_id = self._client.create_container(container)
        except ResourceConflictError:
            existing = self._find(name)
            if existing is None:
                raise
            container_id = existing[0]
        self._client.start_container(container_id)
        return container_id

    def up(self, names: list[str] | None = None) -> dict[str, str]:
        """Start the named peers (all when empty) plus the session's services.

        Raises:
            ConfigurationError: If a name is not a declared peer.
        """
        selected = list(names) if names else list(self._peers.peers)
        for name in selected:
            self._spec(name)

        self._reconciler.ensure_image()
        ensure_network(self._client, self.network)

        services = self._reconciler.services
        for service, container_id in services.start_all_services().items():
            try:
                self._client.connect_network(self.network, container_id, aliases=[service])
            except ResourceConflictError:
                logger.debug(f"Service {service} already on {self.network}")
            except EngineError as e:
                logger.warning(f"Failed to connect service {service} to peers network: {e}")

        started = {}
        for name in selected:
            logger.info(f"Starting peer {name} ({self._peers.peers[name].hostname})")
            started[name] = self.start_peer(name)
        return started

    def down(self) -> int:
        """Remove all peer containers, the services and the peers network."""
        project = self._reconciler.project
        peers = [
            c
            for c in list_managed(
                self._client,
                ManagedFilter(project_name=project.worktree_name, session=PEERS_SESSION),
            )
            if c.is_peer
        ]
        if not peers:
            logger.info("No peer containers to stop")
        removed = 0
        for container in peers:
            try:
                stop_and_remove(self._client, container.id, container.name, timeout=STOP_TIMEOUT)
                removed += 1
            except EngineError as e:
                logger.warning(f"Failed to stop peer container {container.name}: {e}")

        try:
            self._reconciler.services.stop_all_services()
        except EngineError as e:
            logger.warning(f"Failed to stop services: {e}")

        discard_network(self._client, self.network)
        return removed

    async def exec(
        self,
        name: str,
        command: list[str],
        env_overrides: dict[str, str] | None = None,
        cancel: asyncio.Event | None = None,
        proxy: ExecProxy | None = None,
    ) -> int:
        """Run a command in a running peer and return its exit code.

        Raises:
            ConfigurationError: If the peer is not declared.
            EngineError: If the peer is not running.
        """
        self._spec(name)
        container_name = self._names.peer_container(name)
        existing = await asyncio.to_thread(self._find, name)
        if existing is None or existing[1] != "running":
            raise EngineError("exec in peer", container_name, "peer is not running, start it with peers up")

        proxy = proxy or ExecProxy(self._client)
        reconciler = self._reconciler
        descriptor = reconciler.descriptor
        settings = reconciler.settings
        request = ExecRequest(
            container_id=existing[0],
            command=wrap_command(command),
            workdir=map_workdir(reconciler.project.root, settings.cwd, descriptor.workdir),
        )
        request.tty = proxy.is_interactive(request)
        fixed = fixed_exec_env(
            workdir=descriptor.workdir,
            session=PEERS_SESSION,
            uid=settings.uid,
            gid=settings.gid,
            term=settings.term,
            interactive=request.tty,
        )
        fixed["ISO_PEER_NAME"] = name
        request.environment = build_exec_env(fixed, descriptor.environment, env_overrides)
        return await proxy.run(request, cancel)

    async def shell(
        self,
        name: str,
        cancel: asyncio.Event | None = None,
        proxy: ExecProxy | None = None,
    ) -> int:
        return await self.exec(name, list(DEFAULT_SHELL), cancel=cancel, proxy=proxy)

    def status(self) -> list[PeerStatus]:
        statuses = []
        for name, spec in sorted(self._peers.peers.items()):
            existing = self._find(name)
            if existing is None:
                statuses.append(PeerStatus(name, spec.hostname, None, "absent"))
            else:
                state = "running" if existing[1] == "running" else "stopped"
                statuses.append(PeerStatus(name, spec.hostname, existing[0], state))
        return statuses
