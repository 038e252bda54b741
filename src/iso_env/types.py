"""Core value types for iso-env."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

# Ownership labels stamped on every managed resource
LABEL_MANAGED = "iso.managed"
LABEL_PROJECT_NAME = "iso.project.name"
LABEL_PROJECT_DIR = "iso.project.dir"
LABEL_SESSION = "iso.session"
LABEL_NAME = "iso.name"
LABEL_ROLE = "iso.role"
LABEL_EPHEMERAL = "iso.ephemeral"
LABEL_SERVICE = "iso.service"
LABEL_SERVICE_NAME = "iso.service.name"
LABEL_FRESH = "iso.fresh"
LABEL_PEER = "iso.peer"
LABEL_PEER_NAME = "iso.peer.name"
LABEL_OWNER_PID = "iso.owner.pid"
LABEL_OWNER_HOST = "iso.owner.host"

DEFAULT_SESSION = "default"
PEERS_SESSION = "peers"

ROLE_SHELL = "shell"


@dataclass(frozen=True)
class Project:
    """A project directory and its two naming scopes.

    base_name is shared by all worktrees of one repository (cache scope);
    worktree_name is unique per checkout (isolation scope).
    """

    root: Path
    base_name: str
    worktree_name: str


@dataclass(frozen=True)
class Session:
    """A named session. Ephemeral sessions last exactly one invocation."""

    id: str
    ephemeral: bool = False


@dataclass
class ManagedContainer:
    """A container carrying iso ownership labels."""

    id: str
    name: str
    role: str
    project_name: str
    project_dir: str
    session: str
    status: str
    ephemeral: bool = False
    fresh: bool = False
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def is_service(self) -> bool:
        return self.role.startswith("service:")

    @property
    def is_peer(self) -> bool:
        return self.role.startswith("peer:")

    @property
    def running(self) -> bool:
        return self.status == "running"

    @classmethod
    def from_labels(
        cls,
        container_id: str,
        name: str,
        status: str,
        labels: Mapping[str, str],
    ) -> ManagedContainer:
        """Build from engine labels. Role falls back to the legacy service/peer labels."""
        role = labels.get(LABEL_ROLE, "")
        if not role:
            if labels.get(LABEL_SERVICE) == "true":
                role = f"service:{labels.get(LABEL_SERVICE_NAME, '')}"
            elif labels.get(LABEL_PEER) == "true":
                role = f"peer:{labels.get(LABEL_PEER_NAME, '')}"
            else:
                role = ROLE_SHELL
        return cls(
            id=container_id,
            name=name.lstrip("/"),
            role=role,
            project_name=labels.get(LABEL_PROJECT_NAME, ""),
            project_dir=labels.get(LABEL_PROJECT_DIR, ""),
            session=labels.get(LABEL_SESSION, ""),
            status=status,
            ephemeral=labels.get(LABEL_EPHEMERAL) == "true",
            fresh=labels.get(LABEL_FRESH) == "true",
            labels=dict(labels),
        )


@dataclass
class Status:
    """Image and shell container state for one session."""

    image_name: str
    image_exists: bool
    container_name: str
    container_state: str  # "running", "stopped" or "absent"


@dataclass
class PeerStatus:
    """State of one peer container."""

    name: str
    hostname: str
    container_id: str | None
    state: str  # "running", "stopped" or "absent"


@dataclass
class OrphanedSession:
    """A session whose project directory no longer exists."""

    project_dir: str
    project_name: str
    session: str
    containers: list[ManagedContainer] = field(default_factory=list)
