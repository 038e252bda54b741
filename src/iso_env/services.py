"""Auxiliary service containers.

Services have two lifecycles. Persistent services run under stable names and
are reused by every invocation of the session. Fresh services get a per-run
name, remove themselves when stopped, and exist only for one command.
"""

from __future__ import annotations

import logging
import uuid

from iso_env.config import ProjectDescriptor, ServiceSpec
from iso_env.engine.ops import ensure_network, stop_and_remove
from iso_env.engine.protocol import ContainerSpec, ResourceClient
from iso_env.errors import ConfigurationError, EngineError, ResourceConflictError
from iso_env.naming import ResourceNames
from iso_env.session import ephemeral_labels
from iso_env.types import (
    LABEL_FRESH,
    LABEL_MANAGED,
    LABEL_NAME,
    LABEL_PROJECT_DIR,
    LABEL_PROJECT_NAME,
    LABEL_ROLE,
    LABEL_SERVICE,
    LABEL_SERVICE_NAME,
    LABEL_SESSION,
    Project,
    Session,
)

logger = logging.getLogger(__name__)

FRESH_STOP_TIMEOUT = 2


def readiness_spec(services: dict[str, ServiceSpec]) -> str:
    """The "name:port,..." list the supervisor waits on before running a command."""
    return ",".join(
        f"{name}:{spec.port}" for name, spec in sorted(services.items()) if spec.port
    )


def new_run_id() -> str:
    return uuid.uuid4().hex[:8]


class ServiceOrchestrator:
    """Starts and stops the service containers of one session."""

    def __init__(
        self,
        client: ResourceClient,
        project: Project,
        descriptor: ProjectDescriptor,
        names: ResourceNames,
        session: Session | None = None,
    ) -> None:
        self._client = client
        self._project = project
        self._services = descriptor.services
        self._names = names
        self._session = session

    @property
    def services(self) -> dict[str, ServiceSpec]:
        return self._services

    def _labels(self, service: str, fresh: bool) -> dict[str, str]:
        labels = {
            LABEL_MANAGED: "true",
            LABEL_PROJECT_NAME: self._project.worktree_name,
            LABEL_PROJECT_DIR: str(self._project.root),
            LABEL_SESSION: self._names.session,
            LABEL_NAME: service,
            LABEL_ROLE: f"service:{service}",
            LABEL_SERVICE: "true",
            LABEL_SERVICE_NAME: service,
        }
        if fresh:
            labels[LABEL_FRESH] = "true"
        if self._session is not None:
            labels.update(ephemeral_labels(self._session))
        return labels

    def _ensure_service_image(self, image: str) -> None:
        if not self._client.image_exists(image):
            logger.info(f"Pulling image {image}...")
            self._client.pull_image(image)

    def _create(self, name: str, spec: ServiceSpec, fresh: bool) -> str:
        container = ContainerSpec(
            name=name,
            image=spec.image,
            command=list(spec.command),
            environment=dict(spec.environment),
            labels=self._labels(spec.name, fresh),
            network=self._names.session_network,
            aliases=[spec.name],
            extra_hosts=list(spec.extra_hosts),
            auto_remove=fresh,
        )
        container_id = self._client.create_container(container)
        self._client.start_container(container_id)
        return container_id

    def persistent_services_running(self) -> bool:
        """True only if every declared service runs under its stable name."""
        if not self._services:
            return False
        for service in self._services:
            found = self._client.list_containers(
                all=False, name=self._names.service_container(service)
            )
            if not any(c.state == "running" for c in found):
                return False
        return True

    def start_fresh_services(self, run_id: str | None = None) -> dict[str, str]:
        """Start one uniquely named container per service for a single run.

        Returns service name -> container id. If any service fails to start,
        the ones already started are stopped before the error propagates.
        """
        if not self._services:
            return {}
        run_id = run_id or new_run_id()
        ensure_network(self._client, self._names.session_network)

        started: dict[str, str] = {}
        try:
            for service, spec in self._services.items():
                self._ensure_service_image(spec.image)
                name = self._names.fresh_service_container(service, run_id)
                started[service] = self._create(name, spec, fresh=True)
                logger.debug(f"Fresh service {service} started as {name}")
        except EngineError:
            self.stop_fresh_services(started)
            raise
        return started

    def stop_fresh_services(self, started: dict[str, str]) -> None:
        """Stop fresh services. They auto-remove; an explicit remove covers the rest."""
        for service, container_id in started.items():
            try:
                stop_and_remove(self._client, container_id, service, timeout=FRESH_STOP_TIMEOUT)
            except EngineError as e:
                logger.warning(f"Failed to stop fresh service {service}: {e}")

    def start_service(self, service: str) -> str:
        """Start one persistent service: reuse if running, start if stopped, else create."""
        spec = self._services.get(service)
        if spec is None:
            raise ConfigurationError(f"Unknown service: {service}")
        name = self._names.service_container(service)

        existing = self._client.list_containers(all=True, name=name)
        if existing:
            container = existing[0]
            if container.state != "running":
                self._client.start_container(container.id)
            return container.id

        self._ensure_service_image(spec.image)
        try:
            return self._create(name, spec, fresh=False)
        except ResourceConflictError:
            # Another invocation created it first
            logger.debug(f"Service container {name} created concurrently")
            return self._client.list_containers(all=True, name=name)[0].id

    def start_all_services(self) -> dict[str, str]:
        if not self._services:
            return {}
        ensure_network(self._client, self._names.session_network)
        started = {}
        for service in self._services:
            logger.debug(f"Starting service {service}")
            started[service] = self.start_service(service)
        return started

    def stop_all_services(self) -> None:
        """Stop and remove every persistent service container of the session."""
        for service in self._services:
            name = self._names.service_container(service)
            for container in self._client.list_containers(all=True, name=name):
                stop_and_remove(self._client, container.id, name)
