"""Check-then-act helpers shared by every reconciler.

Creation helpers treat "already exists" as success; removal helpers treat
"already gone" and "removal in progress" as success. Nothing is locked: another
process may win any race, and both outcomes leave the engine in the wanted
state.
"""

from __future__ import annotations

import logging

from iso_env.engine.protocol import ResourceClient
from iso_env.errors import EngineError, ResourceConflictError, is_race_absorbed

logger = logging.getLogger(__name__)


def ensure_network(client: ResourceClient, name: str, labels: dict[str, str] | None = None) -> bool:
    """Create a bridge network if absent. Returns True when this call created it."""
    if client.network_exists(name):
        return False
    try:
        client.create_network(name, labels=labels)
    except ResourceConflictError:
        logger.debug(f"Network {name} created concurrently")
        return False
    logger.debug(f"Created network {name}")
    return True


def ensure_volume(client: ResourceClient, name: str, labels: dict[str, str] | None = None) -> bool:
    """Create a named volume if absent. Existing volumes are never touched."""
    if client.volume_exists(name):
        return False
    try:
        client.create_volume(name, labels=labels)
    except ResourceConflictError:
        logger.debug(f"Volume {name} created concurrently")
        return False
    logger.debug(f"Created volume {name}")
    return True


def stop_and_remove(client: ResourceClient, container_id: str, name: str, timeout: int = 10) -> None:
    """Stop then remove a container.

    Raises:
        EngineError: For failures other than the container already being gone.
    """
    try:
        client.stop_container(container_id, timeout=timeout)
    except EngineError as e:
        if not is_race_absorbed(e):
            raise
        logger.debug(f"Container {name} already stopping: {e}")
    try:
        client.remove_container(container_id)
    except EngineError as e:
        if not is_race_absorbed(e):
            raise
        logger.debug(f"Container {name} already removed: {e}")


def discard_container(client: ResourceClient, container_id: str, name: str, timeout: int = 10) -> bool:
    """Best-effort stop_and_remove. Returns False and logs a warning on failure."""
    try:
        stop_and_remove(client, container_id, name, timeout=timeout)
    except EngineError as e:
        logger.warning(f"Failed to remove container {name}: {e}")
        return False
    return True


def discard_network(client: ResourceClient, name: str) -> bool:
    try:
        client.remove_network(name)
    except EngineError as e:
        if is_race_absorbed(e):
            logger.debug(f"Network {name} not removed: {e}")
        else:
            logger.warning(f"Failed to remove network {name}: {e}")
        return False
    logger.debug(f"Removed network {name}")
    return True


def discard_volume(client: ResourceClient, name: str) -> bool:
    try:
        client.remove_volume(name)
    except EngineError as e:
        if is_race_absorbed(e):
            logger.debug(f"Volume {name} not removed: {e}")
        else:
            logger.warning(f"Failed to remove volume {name}: {e}")
        return False
    logger.debug(f"Removed volume {name}")
    return True
