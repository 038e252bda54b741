"""Cleanup of abandoned resources.

Two entry points: a startup sweep run on every session open, which recovers
ephemeral resources left behind by processes that died without tearing down,
and an operator-driven scan for sessions whose project directory is gone.
"""

from __future__ import annotations

import logging
import os
import socket
import time
from pathlib import Path

from iso_env.engine.ops import discard_container, discard_network, discard_volume, stop_and_remove
from iso_env.engine.protocol import ManagedFilter, ResourceClient, list_managed
from iso_env.errors import EngineError
from iso_env.naming import ResourceNames
from iso_env.types import (
    DEFAULT_SESSION,
    LABEL_OWNER_HOST,
    LABEL_OWNER_PID,
    ManagedContainer,
    OrphanedSession,
    Project,
)

logger = logging.getLogger(__name__)

SWEEP_STOP_TIMEOUT = 2
STOP_TIMEOUT = 10
# Engines release container endpoints asynchronously after removal
NETWORK_SETTLE_DELAY = 0.1


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def owner_alive(container: ManagedContainer) -> bool:
    """True if the container records an owning process that still runs on this host."""
    pid = container.labels.get(LABEL_OWNER_PID)
    host = container.labels.get(LABEL_OWNER_HOST)
    if not pid or host != socket.gethostname():
        return False
    try:
        return _pid_alive(int(pid))
    except ValueError:
        return False


def session_network_name(project_name: str, session: str) -> str:
    if session == DEFAULT_SESSION:
        return f"{project_name}-network"
    return f"{project_name}-{session}-network"


def startup_sweep(client: ResourceClient, project: Project) -> int:
    """Remove stale ephemeral containers, volumes and networks of a project.

    Containers whose owning invocation is still alive are left alone. Every
    failure is logged at debug level and never interrupts the caller. Returns
    the number of containers removed.
    """
    names = ResourceNames.for_project(project)
    prefixes = names.ephemeral_prefixes()

    try:
        stale = list_managed(
            client, ManagedFilter(project_name=project.worktree_name, ephemeral=True)
        )
    except EngineError as e:
        logger.debug(f"Failed to list stale containers: {e}")
        return 0

    removed = 0
    for container in stale:
        if owner_alive(container):
            logger.debug(f"Skipping {container.name}: owner still running")
            continue
        logger.debug(f"Removing stale container {container.name} (session {container.session})")
        try:
            stop_and_remove(client, container.id, container.name, timeout=SWEEP_STOP_TIMEOUT)
            removed += 1
        except EngineError as e:
            logger.debug(f"Failed to remove stale container {container.name}: {e}")

    try:
        for volume in client.list_volumes(dangling=True):
            if volume.startswith(prefixes):
                logger.debug(f"Removing dangling ephemeral volume {volume}")
                discard_volume(client, volume)
    except EngineError as e:
        logger.debug(f"Failed to list dangling volumes: {e}")

    try:
        for network in client.list_networks(dangling=True):
            if network.startswith(prefixes):
                logger.debug(f"Removing unused ephemeral network {network}")
                discard_network(client, network)
    except EngineError as e:
        logger.debug(f"Failed to list unused networks: {e}")

    return removed


def list_managed_containers(client: ResourceClient) -> list[ManagedContainer]:
    """Every managed container on the engine, across all projects."""
    return list_managed(client, ManagedFilter())


def find_orphans(client: ResourceClient) -> list[OrphanedSession]:
    """Sessions whose project directory no longer exists on this host."""
    groups: dict[tuple[str, str], list[ManagedContainer]] = {}
    for container in list_managed_containers(client):
        groups.setdefault((container.project_dir, container.session), []).append(container)

    orphans = []
    for (project_dir, session), containers in sorted(groups.items()):
        if project_dir and Path(project_dir).exists():
            continue
        orphans.append(
            OrphanedSession(
                project_dir=project_dir,
                project_name=containers[0].project_name,
                session=session,
                containers=containers,
            )
        )
    return orphans


def cleanup_orphans(
    client: ResourceClient,
    sessions: list[OrphanedSession] | None = None,
    dry_run: bool = False,
) -> int:
    """Remove orphaned sessions (all found when sessions is None).

    Returns the number of containers removed, or that would be in dry-run mode.
    """
    if sessions is None:
        sessions = find_orphans(client)

    total = 0
    networks: set[str] = set()
    for orphan in sessions:
        logger.info(
            f"Cleaning up orphaned session {orphan.project_name}/{orphan.session} "
            f"({orphan.project_dir}, {len(orphan.containers)} containers)"
        )
        if dry_run:
            total += len(orphan.containers)
            continue
        for container in orphan.containers:
            discard_container(client, container.id, container.name, timeout=STOP_TIMEOUT)
            total += 1
        networks.add(session_network_name(orphan.project_name, orphan.session))

    if networks:
        time.sleep(NETWORK_SETTLE_DELAY)
        for network in sorted(networks):
            discard_network(client, network)

    return total


def _stop_containers(client: ResourceClient, containers: list[ManagedContainer]) -> int:
    networks: set[str] = set()
    for container in containers:
        logger.info(f"Stopping container {container.name} ({container.project_name})")
        discard_container(client, container.id, container.name, timeout=STOP_TIMEOUT)
        networks.add(session_network_name(container.project_name, container.session))

    if networks:
        time.sleep(NETWORK_SETTLE_DELAY)
        for network in sorted(networks):
            discard_network(client, network)
    return len(containers)


def stop_all(client: ResourceClient) -> int:
    """Remove every managed container and its session network, across all projects."""
    containers = list_managed_containers(client)
    if not containers:
        logger.info("No managed containers to stop")
        return 0
    count = _stop_containers(client, containers)
    logger.info(f"Stopped {count} managed containers")
    return count


def stop_project_sessions(client: ResourceClient, project: Project) -> int:
    """Remove every session of one project."""
    containers = list_managed(client, ManagedFilter(project_name=project.worktree_name))
    if not containers:
        logger.info(f"No containers to stop for {project.worktree_name}")
        return 0
    count = _stop_containers(client, containers)
    logger.info(f"Stopped all sessions of {project.worktree_name} ({count} containers)")
    return count
