"""Session lifecycle reconciliation.

Every ensure_* operation is check-then-act against an engine other processes
write to concurrently: absent resources are created, present ones are left
alone, and "already exists" from a losing race counts as success.
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
from pathlib import Path

from iso_env.config import (
    HELPER_MOUNT,
    INIT_COMMAND,
    ProjectDescriptor,
    RuntimeSettings,
)
from iso_env.engine.ops import (
    discard_network,
    discard_volume,
    ensure_network,
    ensure_volume,
    stop_and_remove,
)
from iso_env.engine.protocol import ContainerSpec, ManagedFilter, ResourceClient, list_managed
from iso_env.errors import EngineError, ResourceConflictError
from iso_env.exec_proxy import (
    ExecProxy,
    ExecRequest,
    build_exec_env,
    fixed_exec_env,
    wrap_command,
)
from iso_env.naming import ResourceNames, sanitize_path
from iso_env.services import ServiceOrchestrator, readiness_spec
from iso_env.session import ephemeral_labels
from iso_env.types import (
    LABEL_MANAGED,
    LABEL_NAME,
    LABEL_PROJECT_DIR,
    LABEL_PROJECT_NAME,
    LABEL_ROLE,
    LABEL_SESSION,
    ROLE_SHELL,
    Project,
    Session,
    Status,
)

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 10


def map_workdir(root: Path, cwd: Path, workdir: str) -> str:
    """Map cwd's offset from the project root onto the container workdir.

    Anything outside the root (or the root itself) maps to the workdir root.
    """
    rel = os.path.relpath(os.path.realpath(cwd), os.path.realpath(root))
    if rel == "." or rel == ".." or rel.startswith(".." + os.sep) or os.path.isabs(rel):
        return workdir
    return posixpath.join(workdir, *Path(rel).parts)


def expand_bind(bind: str, home: Path) -> str:
    """Expand a leading ~ in the host side of "host:container[:opts]"."""
    host, sep, rest = bind.partition(":")
    if host == "~":
        host = str(home)
    elif host.startswith("~/"):
        host = str(home / host[2:])
    return f"{host}{sep}{rest}"


class Reconciler:
    """Brings a (project, session) pair to the running state and tears it down."""

    def __init__(
        self,
        client: ResourceClient,
        project: Project,
        descriptor: ProjectDescriptor,
        session: Session,
        settings: RuntimeSettings,
    ) -> None:
        self.client = client
        self.project = project
        self.descriptor = descriptor
        self.session = session
        self.settings = settings
        self.names = ResourceNames.for_project(project, session.id)
        self.services = ServiceOrchestrator(client, project, descriptor, self.names, session)

    # -- image ---------------------------------------------------------------

    def _build(self) -> None:
        tag = self.names.image
        logger.info(f"Building {tag} image...")
        for line in self.client.build_image(
            str(self.project.root), self.descriptor.dockerfile, tag
        ):
            text = line.rstrip()
            if text:
                logger.debug(text)
        logger.info(f"Successfully built {tag}")

    def ensure_image(self) -> bool:
        """Build the shell image if absent. Returns True when a build happened.

        Raises:
            ImageBuildError: If the build fails; carries the full build log.
        """
        if self.client.image_exists(self.names.image):
            return False
        self._build()
        return True

    def rebuild_image(self) -> None:
        if self.client.image_exists(self.names.image):
            logger.info(f"Removing existing image {self.names.image}")
            self.client.remove_image(self.names.image)
        self._build()

    # -- volumes and networks ------------------------------------------------

    def _cache_override(self) -> Path | None:
        return self.settings.cache_dir

    def ensure_volumes(self) -> None:
        """Create missing session volumes, and cache volumes unless cache dirs are overridden."""
        labels = {LABEL_MANAGED: "true", LABEL_PROJECT_NAME: self.project.worktree_name}
        for path in self.descriptor.volumes:
            ensure_volume(self.client, self.names.session_volume(path), labels=labels)
        if self._cache_override() is None:
            for path in self.descriptor.cache:
                ensure_volume(self.client, self.names.cache_volume(path), labels=labels)

    def ensure_network(self) -> bool:
        return ensure_network(self.client, self.names.session_network)

    # -- containers ----------------------------------------------------------

    def build_mounts(self) -> list[str]:
        """Bind specs shared by the shell container and every peer."""
        helper = self.project.root / self.descriptor.helper_path
        binds = [
            f"{self.project.root}:{self.descriptor.workdir}",
            f"{helper}:{HELPER_MOUNT}:ro",
        ]
        for path in self.descriptor.volumes:
            binds.append(f"{self.names.session_volume(path)}:{path}")

        cache_dir = self._cache_override()
        for path in self.descriptor.cache:
            if cache_dir is not None:
                host_path = cache_dir / sanitize_path(path)
                host_path.mkdir(parents=True, exist_ok=True)
                binds.append(f"{host_path}:{path}")
            else:
                binds.append(f"{self.names.cache_volume(path)}:{path}")

        binds.extend(expand_bind(b, self.settings.home) for b in self.descriptor.binds)
        return binds

    def labels(self) -> dict[str, str]:
        labels = {
            LABEL_MANAGED: "true",
            LABEL_PROJECT_NAME: self.project.worktree_name,
            LABEL_PROJECT_DIR: str(self.project.root),
            LABEL_SESSION: self.session.id,
            LABEL_NAME: ROLE_SHELL,
            LABEL_ROLE: ROLE_SHELL,
            **ephemeral_labels(self.session),
        }
        return labels

    def container_environment(self) -> dict[str, str]:
        env = {"ISO_WORKDIR": self.descriptor.workdir}
        if services := readiness_spec(self.descriptor.services):
            env["ISO_SERVICES"] = services
        return env

    def start_container(self) -> str:
        """Create and start the shell container. The image must already exist."""
        self.ensure_volumes()
        has_services = bool(self.descriptor.services)
        if has_services:
            self.ensure_network()

        spec = ContainerSpec(
            name=self.names.shell_container,
            image=self.names.image,
            command=list(INIT_COMMAND),
            environment=self.container_environment(),
            labels=self.labels(),
            binds=self.build_mounts(),
            working_dir=self.descriptor.workdir,
            network=self.names.session_network if has_services else None,
            extra_hosts=list(self.descriptor.extra_hosts),
            auto_remove=self.session.ephemeral,
            privileged=self.descriptor.privileged,
        )
        container_id = self.client.create_container(spec)
        self.client.start_container(container_id)
        logger.debug(f"Started container {spec.name} ({container_id[:12]})")
        return container_id

    def find_container(self) -> tuple[str, str] | None:
        """(id, state) of the session's shell container, if it exists."""
        found = self.client.list_containers(all=True, name=self.names.shell_container)
        if not found:
            return None
        return found[0].id, found[0].state

    def ensure_container(self) -> str:
        """Reuse a running container, start a stopped one, or build and create one."""
        existing = self.find_container()
        if existing is not None:
            container_id, state = existing
            if state != "running":
                logger.debug(f"Starting stopped container {self.names.shell_container}")
                self.client.start_container(container_id)
            return container_id

        self.ensure_image()
        try:
            return self.start_container()
        except ResourceConflictError:
            logger.debug(f"Container {self.names.shell_container} created concurrently")
            existing = self.find_container()
            if existing is None:
                raise
            if existing[1] != "running":
                self.client.start_container(existing[0])
            return existing[0]

    # -- run -----------------------------------------------------------------

    async def run_command(
        self,
        command: list[str],
        env_overrides: dict[str, str] | None = None,
        cancel: asyncio.Event | None = None,
        proxy: ExecProxy | None = None,
    ) -> int:
        """Run one command in the session and return its exit code unchanged.

        Fresh services are started when the session's persistent services are
        not all running, and are always stopped before returning.
        """
        proxy = proxy or ExecProxy(self.client)
        started: dict[str, str] = {}
        if self.descriptor.services and not await asyncio.to_thread(
            self.services.persistent_services_running
        ):
            started = await asyncio.to_thread(self.services.start_fresh_services)
        try:
            container_id = await asyncio.to_thread(self.ensure_container)
            request = ExecRequest(
                container_id=container_id,
                command=wrap_command(command),
                workdir=map_workdir(self.project.root, self.settings.cwd, self.descriptor.workdir),
            )
            interactive = proxy.is_interactive(request)
            request.tty = interactive
            request.environment = build_exec_env(
                fixed_exec_env(
                    workdir=self.descriptor.workdir,
                    session=self.session.id,
                    uid=self.settings.uid,
                    gid=self.settings.gid,
                    term=self.settings.term,
                    interactive=interactive,
                    services=readiness_spec(self.descriptor.services),
                ),
                self.descriptor.environment,
                env_overrides,
            )
            return await proxy.run(request, cancel)
        finally:
            if started:
                await asyncio.to_thread(self.services.stop_fresh_services, started)

    # -- session operations --------------------------------------------------

    def start(self) -> str:
        """Start persistent services, then the shell container."""
        self.ensure_image()
        self.services.start_all_services()
        container_id = self.ensure_container()
        logger.info(f"Started container {self.names.shell_container} ({container_id[:12]})")
        return container_id

    def reset(self) -> bool:
        """Remove the shell container but keep services and volumes."""
        existing = self.find_container()
        if existing is None:
            logger.info(f"Container {self.names.shell_container} does not exist")
            return False
        stop_and_remove(self.client, existing[0], self.names.shell_container, timeout=STOP_TIMEOUT)
        logger.info(f"Container {self.names.shell_container} reset, it will be recreated on next run")
        return True

    def stop_session(self) -> int:
        """Remove every container, the network and the session volumes of this session.

        Failures are logged and cleanup continues. Returns the number of
        containers removed.
        """
        containers = list_managed(
            self.client,
            ManagedFilter(project_name=self.project.worktree_name, session=self.session.id),
        )
        removed = 0
        for container in containers:
            logger.debug(f"Stopping container {container.name} ({container.role})")
            try:
                stop_and_remove(self.client, container.id, container.name, timeout=STOP_TIMEOUT)
                removed += 1
            except EngineError as e:
                logger.warning(f"Failed to remove container {container.name}, continuing: {e}")

        discard_network(self.client, self.names.session_network)

        for path in self.descriptor.volumes:
            discard_volume(self.client, self.names.session_volume(path))

        if self.session.ephemeral:
            prefix = self.names.session_prefix()
            try:
                dangling = self.client.list_volumes(dangling=True)
            except EngineError as e:
                logger.warning(f"Failed to list dangling volumes: {e}")
                dangling = []
            for volume in dangling:
                if volume.startswith(prefix):
                    discard_volume(self.client, volume)

        return removed

    def prune_cache(self) -> list[str]:
        """Remove this project's cache volumes. Returns the names removed."""
        removed = []
        for path in self.descriptor.cache:
            name = self.names.cache_volume(path)
            if not self.client.volume_exists(name):
                logger.debug(f"Cache volume {name} does not exist")
                continue
            logger.info(f"Removing cache volume {name}")
            if discard_volume(self.client, name):
                removed.append(name)
        return removed

    def status(self) -> Status:
        existing = self.find_container()
        if existing is None:
            state = "absent"
        elif existing[1] == "running":
            state = "running"
        else:
            state = "stopped"
        return Status(
            image_name=self.names.image,
            image_exists=self.client.image_exists(self.names.image),
            container_name=self.names.shell_container,
            container_state=state,
        )
