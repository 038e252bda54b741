"""Environment: one project session, opened per invocation.

Usage:
    descriptor = ProjectDescriptor.from_dict(config, services=services)
    async with Environment.open(descriptor) as env:
        code = await env.run(["make", "test"])

Opening resolves the project (raising ConfigurationError before any engine
call when no descriptor directory exists), resolves the session and sweeps
stale ephemeral resources. Ephemeral sessions are torn down after run(),
whether the command succeeded, failed or raised.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from iso_env.config import ProjectDescriptor, RuntimeSettings
from iso_env.engine.docker_client import DockerResourceClient
from iso_env.engine.protocol import ManagedFilter, ResourceClient, list_managed
from iso_env.errors import ConfigurationError, IsoError
from iso_env.exec_proxy import ExecProxy, parse_env_overrides
from iso_env.garbage import startup_sweep, stop_project_sessions
from iso_env.lifecycle import Reconciler
from iso_env.naming import resolve_project
from iso_env.peers import PeerOrchestrator
from iso_env.session import resolve_session
from iso_env.types import ManagedContainer, Project, Session, Status

logger = logging.getLogger(__name__)


class Environment:
    """Facade over the reconciler, orchestrators and exec proxy of one session."""

    def __init__(
        self,
        client: ResourceClient,
        project: Project,
        descriptor: ProjectDescriptor,
        session: Session,
        settings: RuntimeSettings,
        proxy: ExecProxy | None = None,
    ) -> None:
        self._client = client
        self._reconciler = Reconciler(client, project, descriptor, session, settings)
        self._proxy = proxy
        self._cancel = asyncio.Event()
        self._peers: PeerOrchestrator | None = None

    @classmethod
    def open(
        cls,
        descriptor: ProjectDescriptor | None = None,
        session: str | None = None,
        settings: RuntimeSettings | None = None,
        client: ResourceClient | None = None,
        proxy: ExecProxy | None = None,
        sweep: bool = True,
    ) -> Environment:
        """Resolve project and session, connect to the engine and sweep stale resources.

        Raises:
            ConfigurationError: If no project encloses the working directory.
        """
        settings = settings or RuntimeSettings.from_env()
        project = resolve_project(settings.cwd)
        resolved = resolve_session(session, settings)
        if client is None:
            client = DockerResourceClient()
        if sweep:
            startup_sweep(client, project)
        logger.debug(
            f"Opened {project.worktree_name} session {resolved.id} "
            f"(ephemeral={resolved.ephemeral})"
        )
        return cls(client, project, descriptor or ProjectDescriptor(), resolved, settings, proxy)

    async def __aenter__(self) -> Environment:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def project(self) -> Project:
        return self._reconciler.project

    @property
    def session(self) -> Session:
        return self._reconciler.session

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    @property
    def peers(self) -> PeerOrchestrator:
        """Peer operations. Raises ConfigurationError when no peers are declared."""
        if self._peers is None:
            self._peers = PeerOrchestrator(self._reconciler)
        return self._peers

    async def run(
        self,
        command: list[str],
        env: list[str] | dict[str, str] | None = None,
    ) -> int:
        """Run a command and return its exit code unchanged.

        env takes KEY=VALUE strings or a mapping; these override project defaults.
        """
        if not command:
            raise ConfigurationError("No command specified")
        overrides = dict(env) if isinstance(env, dict) else parse_env_overrides(env)
        self._cancel.clear()
        try:
            return await self._reconciler.run_command(
                command, overrides, cancel=self._cancel, proxy=self._proxy
            )
        finally:
            if self.session.ephemeral:
                await asyncio.to_thread(self._teardown)

    def _teardown(self) -> None:
        try:
            self._reconciler.stop_session()
        except IsoError as e:
            logger.warning(f"Failed to clean up ephemeral session {self.session.id}: {e}")

    def cancel(self) -> None:
        """Abort the exec in progress; run() raises ExecCancelledError."""
        self._cancel.set()

    def build(self) -> bool:
        return self._reconciler.ensure_image()

    def rebuild(self) -> None:
        self._reconciler.rebuild_image()

    def start(self) -> str:
        return self._reconciler.start()

    def reset(self) -> bool:
        return self._reconciler.reset()

    def stop(self) -> int:
        return self._reconciler.stop_session()

    def stop_all_sessions(self) -> int:
        return stop_project_sessions(self._client, self.project)

    def prune(self) -> list[str]:
        return self._reconciler.prune_cache()

    def status(self) -> Status:
        return self._reconciler.status()

    def list_containers(self) -> list[ManagedContainer]:
        """Managed containers of this project, all sessions."""
        return list_managed(self._client, ManagedFilter(project_name=self.project.worktree_name))

    def close(self) -> None:
        self._client.close()
